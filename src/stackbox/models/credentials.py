import json
from typing import Dict

from pydantic import BaseModel, Field, SecretStr


class CredentialBundle(BaseModel):
    """Database connection facts. Only ever persisted inside the secret store."""

    engine: str = "mysql"
    host: str = ""
    port: int = 3306
    username: str
    password: SecretStr
    database_name: str
    databases: Dict[str, str] = Field(default_factory=dict)

    def with_endpoint(self, host: str, port: int) -> "CredentialBundle":
        return self.model_copy(update={"host": host, "port": port})

    def with_password(self, password: str) -> "CredentialBundle":
        return self.model_copy(update={"password": SecretStr(password)})

    def to_secret_string(self) -> str:
        payload = self.model_dump(mode="json")
        payload["password"] = self.password.get_secret_value()
        return json.dumps(payload)

    @classmethod
    def from_secret_string(cls, value: str) -> "CredentialBundle":
        return cls(**json.loads(value))

    def database_for(self, service: str) -> str:
        return self.databases.get(service, self.database_name)
