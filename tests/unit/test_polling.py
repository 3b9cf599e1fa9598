import threading
import unittest
from stackbox.errors import ProvisioningCancelledError, ResourceFailedError, ValidationTimeoutError
from stackbox.polling import RunContext, poll_until


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestPollUntil(unittest.TestCase):
    def test_returns_first_value(self):
        answers = iter([None, None, "ready"])
        result = poll_until(lambda: next(answers), description="thing", interval=0.001, timeout=5)
        self.assertEqual(result, "ready")

    def test_times_out(self):
        clock = FakeClock()

        def check():
            clock.now += 10
            return None

        with self.assertRaises(ValidationTimeoutError) as ctx:
            poll_until(check, description="certificate", interval=0.001, timeout=25, clock=clock)
        self.assertEqual(ctx.exception.resource, "certificate")
        self.assertGreaterEqual(ctx.exception.waited_seconds, 25)

    def test_check_errors_propagate(self):
        def check():
            raise ResourceFailedError("instance", "failed")

        with self.assertRaises(ResourceFailedError):
            poll_until(check, description="instance", interval=0.001, timeout=5)

    def test_cancel_wakes_waiter(self):
        context = RunContext("acme-1")
        threading.Timer(0.05, context.cancel).start()

        with self.assertRaises(ProvisioningCancelledError):
            poll_until(lambda: None, description="thing", interval=30, timeout=60, context=context)

    def test_context_deadline_caps_timeout(self):
        clock = FakeClock()
        context = RunContext("acme-1", timeout=5, clock=clock)

        def check():
            clock.now += 3
            return None

        with self.assertRaises(ValidationTimeoutError):
            poll_until(check, description="thing", interval=0.001, timeout=600, context=context, clock=clock)
        self.assertLess(clock.now, 600)


class TestRunContext(unittest.TestCase):
    def test_remaining(self):
        clock = FakeClock()
        context = RunContext("acme-1", timeout=10, clock=clock)
        clock.now = 4
        self.assertEqual(context.remaining(), 6)
        clock.now = 20
        self.assertEqual(context.remaining(), 0)
        self.assertIsNone(RunContext("acme-2").remaining())

    def test_check_after_cancel(self):
        context = RunContext("acme-1")
        context.check()
        context.cancel()
        self.assertTrue(context.cancelled)
        with self.assertRaises(ProvisioningCancelledError):
            context.check()


if __name__ == "__main__":
    unittest.main()
