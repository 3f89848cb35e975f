from models import ClientIdentity


class FakeClock:
    """Manually advanced replacement for time.time"""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


def client(n: int, user_agent: str = "TestPlayer/1.0") -> ClientIdentity:
    return ClientIdentity(address=f"10.0.0.{n}", user_agent=user_agent)
