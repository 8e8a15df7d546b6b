from __future__ import annotations

from datetime import datetime, timedelta

from syncwarden.domain.models import BackgroundJob


class FakeClock:
    # Mutable UTC clock passed as time_provider to services under test.
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingQueue:
    # Captures dispatched job ids instead of reaching a broker.
    name = "recording"

    def __init__(self, *, deliver: bool = True) -> None:
        self.deliver = deliver
        self.notified: list[str] = []

    async def notify(self, job: BackgroundJob) -> bool:
        self.notified.append(job.id)
        return self.deliver


def auth_headers(role: str = "admin", user_id: str = "ops-user") -> dict[str, str]:
    return {"X-User-Id": user_id, "X-Role": role}
