"""
Pool of API keys with rate-limit and credit aware round-robin selection.
"""
import asyncio
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional

from ..errors import InvalidCredential, RemoteRequestError, UpscalerError, ValidationError
from .media import MediaInfo
from .security import mask_token
from .topaz_client import CreditBalance, TopazClient, VideoOptions

logger = logging.getLogger(__name__)

DEFAULT_RETRY_AFTER_MS = 60000

# Minimal request used to prove a key works
VALIDATION_SOURCE = MediaInfo(width=1920, height=1080, duration=1, frame_rate=30,
                              frame_count=30, container="mp4", size=1000000)
VALIDATION_OPTIONS = VideoOptions(model="prob-4", resolution="1920x1080",
                                  frame_interpolation="chf-3", slow_motion=1, crop_to_fit=False)


@dataclass(eq=False)
class Credential:
    token: str
    client: Any
    is_active: bool = True
    request_count: int = 0
    last_used: Optional[datetime] = None
    rate_limit_reset: Optional[datetime] = None
    credits: Optional[CreditBalance] = None
    last_credit_check: Optional[datetime] = None
    record_id: Optional[int] = None

    @property
    def masked(self) -> str:
        return mask_token(self.token)

    @property
    def available_credits(self) -> Optional[int]:
        return self.credits.available if self.credits else None

    def is_rate_limited(self, now: datetime) -> bool:
        return self.rate_limit_reset is not None and now < self.rate_limit_reset


class CredentialPool:
    """
    Keys keep insertion order. Rotation runs over the eligible subset only,
    so the cursor is taken modulo the eligible count, not the pool size.
    """

    def __init__(self, client_factory: Callable[[str], Any] = TopazClient,
                 clock: Callable[[], datetime] = datetime.utcnow):
        self._client_factory = client_factory
        self._clock = clock
        self._credentials: List[Credential] = []
        self._cursor = 0
        self._lock = threading.Lock()

    def __len__(self):
        return len(self._credentials)

    def now(self) -> datetime:
        return self._clock()

    @property
    def credentials(self) -> List[Credential]:
        with self._lock:
            return list(self._credentials)

    def index_of(self, credential: Credential) -> int:
        with self._lock:
            for i, c in enumerate(self._credentials):
                if c is credential:
                    return i
        return -1

    def is_eligible(self, credential: Credential) -> bool:
        if not credential.is_active:
            return False
        if credential.is_rate_limited(self._clock()):
            return False
        if credential.credits is not None and credential.credits.available <= 0:
            return False
        return True

    async def add(self, token: str, record_id: Optional[int] = None) -> Credential:
        """
        Validate `token` with a throwaway video request, fetch its balance and
        append it. Raises InvalidCredential if the service rejects the key and
        NetworkError if it cannot be reached.
        """
        token = (token or "").strip()
        if not token:
            raise ValidationError("Please enter an API key")
        if any(c.token == token for c in self.credentials):
            raise ValidationError(f"API key {mask_token(token)} is already in the pool")

        client = self._client_factory(token)
        try:
            await client.create_video_request(VALIDATION_SOURCE, VALIDATION_OPTIONS)
        except (InvalidCredential, RemoteRequestError) as e:
            logger.warning(f"API key validation failed for {mask_token(token)}: {e}")
            raise InvalidCredential(f"Invalid API key: {e}") from e

        credential = Credential(token=token, client=client, record_id=record_id)
        try:
            credential.credits = await client.get_credit_balance()
            credential.last_credit_check = self._clock()
        except UpscalerError as e:
            logger.warning(f"Could not fetch initial credits for {credential.masked}: {e}")

        with self._lock:
            self._credentials.append(credential)
        logger.info(f"✅ API key {credential.masked} added (credits: {credential.available_credits})")
        return credential

    def remove(self, index: int) -> Optional[Credential]:
        with self._lock:
            if not 0 <= index < len(self._credentials):
                return None
            removed = self._credentials.pop(index)
            if self._cursor >= self._eligible_count():
                self._cursor = 0
        logger.info(f"API key {removed.masked} removed")
        return removed

    def set_active(self, index: int, active: bool) -> Optional[Credential]:
        with self._lock:
            if not 0 <= index < len(self._credentials):
                return None
            credential = self._credentials[index]
            credential.is_active = active
        logger.info(f"API key {credential.masked} {'activated' if active else 'deactivated'}")
        return credential

    def _eligible(self) -> List[Credential]:
        return [c for c in self._credentials if self.is_eligible(c)]

    def _eligible_count(self) -> int:
        return len(self._eligible())

    def next_eligible(self) -> Optional[Credential]:
        """
        Round-robin over eligible keys. When none is eligible, return the key
        with the earliest rate-limit reset without touching the cursor or its
        usage; callers must treat that as "wait", not "use".
        """
        with self._lock:
            if not self._credentials:
                return None

            eligible = self._eligible()
            if not eligible:
                return self._earliest_reset()

            selected = eligible[self._cursor % len(eligible)]
            self._cursor = (self._cursor + 1) % len(eligible)
            selected.request_count += 1
            selected.last_used = self._clock()
            return selected

    def _earliest_reset(self) -> Credential:
        earliest = None
        for credential in self._credentials:
            if credential.rate_limit_reset is None:
                continue
            if earliest is None or credential.rate_limit_reset < earliest.rate_limit_reset:
                earliest = credential
        return earliest or self._credentials[0]

    def mark_rate_limited(self, credential: Credential, retry_after_ms: int = DEFAULT_RETRY_AFTER_MS):
        with self._lock:
            credential.rate_limit_reset = self._clock() + timedelta(milliseconds=retry_after_ms)
        logger.warning(f"API key {credential.masked} rate limited. Reset at: {credential.rate_limit_reset}")

    async def refresh_credits(self, credential: Credential) -> bool:
        """Best effort. On failure the previous snapshot is kept."""
        try:
            balance = await credential.client.get_credit_balance()
        except UpscalerError as e:
            logger.warning(f"Failed to refresh credits for API key {credential.masked}: {e}")
            return False
        with self._lock:
            credential.credits = balance
            credential.last_credit_check = self._clock()
        return True

    async def refresh_all_credits(self) -> None:
        credentials = self.credentials
        if credentials:
            await asyncio.gather(*(self.refresh_credits(c) for c in credentials))

    def stats(self) -> dict:
        now = self._clock()
        with self._lock:
            return {
                "total_count": len(self._credentials),
                "active_count": sum(1 for c in self._credentials if c.is_active),
                "total_requests": sum(c.request_count for c in self._credentials),
                "rate_limited_count": sum(1 for c in self._credentials if c.is_rate_limited(now)),
            }

    def describe(self) -> List[dict]:
        """Key listing for display. Tokens are masked."""
        now = self._clock()
        with self._lock:
            return [
                {
                    "index": i,
                    "key": c.masked,
                    "is_active": c.is_active,
                    "request_count": c.request_count,
                    "last_used": c.last_used,
                    "is_rate_limited": c.is_rate_limited(now),
                    "rate_limit_reset": c.rate_limit_reset,
                    "credits": c.credits,
                    "last_credit_check": c.last_credit_check,
                }
                for i, c in enumerate(self._credentials)
            ]
