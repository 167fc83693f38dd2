import unittest
from datetime import datetime, timedelta, timezone

from hailtrace.models import Agent, Event, Session, UserMessage
from hailtrace.validate import validate_session

BASE = datetime(2026, 2, 16, 10, 0, 0, tzinfo=timezone.utc)


def _event(event_id: str, offset: int) -> Event:
    return Event(event_id=event_id, timestamp=BASE + timedelta(seconds=offset), event_type=UserMessage())


class ValidateSessionTests(unittest.TestCase):
    def test_valid_session_has_no_issues(self) -> None:
        session = Session(
            session_id="s",
            agent=Agent(provider="openai", model="gpt-5", tool="codex"),
            events=[_event("a", 0), _event("b", 1)],
        )
        self.assertEqual(validate_session(session), [])

    def test_every_problem_is_reported(self) -> None:
        session = Session(
            version="v2",
            session_id="",
            agent=Agent(provider="", model="m", tool="codex"),
            events=[_event("a", 5), _event("a", 1)],
        )
        codes = sorted(issue.code for issue in validate_session(session))
        self.assertEqual(codes, ["duplicate_event_id", "invalid_version", "missing_field", "missing_field", "out_of_order"])

    def test_empty_session_is_flagged(self) -> None:
        session = Session(session_id="s", agent=Agent(provider="p", model="m", tool="t"))
        self.assertEqual([issue.code for issue in validate_session(session)], ["empty_session"])


if __name__ == "__main__":
    unittest.main()
