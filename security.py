import threading
import time
from typing import Optional

import bcrypt
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from config import get_settings


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.token_secret, salt="access-token")


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def issue_access_token(user_id: int) -> str:
    return _serializer().dumps({"u": user_id})


def verify_access_token(token: str, max_age_hours: Optional[int] = None) -> Optional[int]:
    if max_age_hours is None:
        max_age_hours = get_settings().token_max_age_hours
    try:
        data = _serializer().loads(token, max_age=max_age_hours * 3600)
    except SignatureExpired:
        return None
    except BadSignature:
        return None

    user_id = data.get("u") if isinstance(data, dict) else None
    if not isinstance(user_id, int):
        return None
    return user_id


class FixedWindowRateLimiter:
    """Allows ``max_attempts`` calls per caller identity in each time window.

    Windows are fixed: the first attempt of an identity opens a window of
    ``window_seconds`` and the counter resets once it has elapsed.
    """

    def __init__(self, max_attempts: int, window_seconds: int, clock=time.monotonic) -> None:
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: dict[str, tuple[float, int]] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()

    def _sweep(self, now: float) -> None:
        # At most once per window; callers hold the lock.
        if now - self._last_sweep < self.window_seconds:
            return
        expired = [
            key
            for key, (opened_at, _) in self._windows.items()
            if now - opened_at >= self.window_seconds
        ]
        for key in expired:
            del self._windows[key]
        self._last_sweep = now

    def tracked_identities(self) -> int:
        with self._lock:
            return len(self._windows)

    def hit(self, identity: str) -> bool:
        """Record an attempt; return False when the identity is over its limit."""
        now = self._clock()
        with self._lock:
            self._sweep(now)
            opened_at, count = self._windows.get(identity, (now, 0))
            if now - opened_at >= self.window_seconds:
                opened_at, count = now, 0
            if count >= self.max_attempts:
                self._windows[identity] = (opened_at, count)
                return False
            self._windows[identity] = (opened_at, count + 1)
            return True

    def retry_after(self, identity: str) -> float:
        with self._lock:
            window = self._windows.get(identity)
        if not window:
            return 0.0
        opened_at, _ = window
        return max(0.0, opened_at + self.window_seconds - self._clock())

    def reset(self, identity: str) -> None:
        with self._lock:
            self._windows.pop(identity, None)
