import logging
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Generic, Iterable, Optional, TypeVar

from botocore.exceptions import ClientError

from stackbox.errors import ExternalAPIError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Outcome(str, Enum):
    CREATED = "created"
    EXISTING = "existing"


@dataclass
class Provisioned(Generic[T]):
    value: T
    outcome: Outcome

    @property
    def created(self) -> bool:
        return self.outcome == Outcome.CREATED


def error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "")


def api_error(error: ClientError, operation: str, stage: Optional[str] = None) -> ExternalAPIError:
    message = error.response.get("Error", {}).get("Message") or str(error)
    return ExternalAPIError(message, stage=stage, operation=operation, code=error_code(error))


@contextmanager
def provider_call(operation: str):
    """Translate provider errors raised inside the block into ExternalAPIError."""
    try:
        yield
    except ClientError as e:
        raise api_error(e, operation) from e


def find_or_create(
    find: Callable[[], Optional[T]],
    create: Callable[[], T],
    *,
    duplicate_codes: Iterable[str],
    resource: str,
) -> Provisioned[T]:
    """Look a resource up by name before creating it.

    A create that loses a race against a concurrent caller surfaces as one of
    `duplicate_codes`; that is resolved by looking the resource up again.
    """
    existing = find()
    if existing is not None:
        logger.info("Using existing %s", resource)
        return Provisioned(existing, Outcome.EXISTING)

    try:
        created = create()
    except ClientError as e:
        if error_code(e) not in set(duplicate_codes):
            raise
        logger.info("%s was created concurrently, reusing it", resource)
        existing = find()
        if existing is None:
            raise
        return Provisioned(existing, Outcome.EXISTING)

    logger.info("Created %s", resource)
    return Provisioned(created, Outcome.CREATED)
