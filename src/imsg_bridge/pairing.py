"""Contact pairing: short-lived codes that let unknown senders get approved.

An unknown direct sender under the `pairing` policy receives a code. The
operator approves it from the console (`/pairing approve <code>`), which
appends the sender's handle to `channels.imessage.allow_from`.

State is in memory only and owned by one `PairingRegistry` instance. All
check-then-mutate sequences run inside synchronous code so a single event
loop needs no locking.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional

from imsg_bridge.host import ConfigPort, merge_channel_section, read_channel_section
from imsg_bridge.log import BridgeLogger
from imsg_bridge.types import ClaimAttemptWindow, PendingPairing, now_ms

CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CODE_LENGTH = 8
CODE_TTL_MS = 15 * 60 * 1000
CODE_GENERATION_ATTEMPTS = 100

CLAIM_WINDOW_MS = 60 * 1000
CLAIM_MAX_ATTEMPTS = 5

APPROVE_COMMAND = "/pairing approve"


class PairingFailure(str, Enum):
    INVALID_CODE = "invalid_code"
    EXPIRED_CODE = "expired_code"
    ALREADY_CLAIMED = "already_claimed"
    RATE_LIMITED = "rate_limited"
    CODE_GENERATION_EXHAUSTED = "code_generation_exhausted"

    @property
    def message(self) -> str:
        return _FAILURE_MESSAGES[self]


_FAILURE_MESSAGES = {
    PairingFailure.INVALID_CODE: "Invalid or expired pairing code.",
    PairingFailure.EXPIRED_CODE: "Pairing code has expired.",
    PairingFailure.ALREADY_CLAIMED: "Pairing code has already been claimed.",
    PairingFailure.RATE_LIMITED: "Rate limited. Try again in 1 minute.",
    PairingFailure.CODE_GENERATION_EXHAUSTED: "Failed to generate unique pairing code.",
}


@dataclass(frozen=True)
class PairingOutcome:
    """Typed result of a create or claim call."""

    handle: Optional[str] = None
    code: Optional[str] = None
    error: Optional[PairingFailure] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def message(self) -> str:
        if self.error is not None:
            return self.error.message
        return ""


@dataclass(frozen=True)
class CleanupReport:
    pairings_removed: int = 0
    windows_removed: int = 0


class ClaimRateLimiter:
    """Fixed-window attempt counter per claim source."""

    def __init__(
        self,
        *,
        window_ms: int = CLAIM_WINDOW_MS,
        max_attempts: int = CLAIM_MAX_ATTEMPTS,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._window_ms = int(window_ms)
        self._max_attempts = int(max_attempts)
        self._clock = clock
        self._windows: Dict[str, ClaimAttemptWindow] = {}

    def check(self, source_id: str) -> bool:
        """Record one attempt and return whether it is allowed."""

        now = self._clock()
        window = self._windows.get(source_id)
        if window is None or now - window.window_start_ms > self._window_ms:
            self._windows[source_id] = ClaimAttemptWindow(count=1, window_start_ms=now)
            return True
        if window.count >= self._max_attempts:
            return False
        window.count += 1
        return True

    def sweep(self) -> int:
        now = self._clock()
        stale = [
            source_id
            for source_id, window in self._windows.items()
            if now - window.window_start_ms > self._window_ms
        ]
        for source_id in stale:
            del self._windows[source_id]
        return len(stale)

    def window(self, source_id: str) -> Optional[ClaimAttemptWindow]:
        return self._windows.get(source_id)

    def __len__(self) -> int:
        return len(self._windows)


class PairingRegistry:
    """Outstanding pairing codes keyed by code."""

    def __init__(
        self,
        *,
        ttl_ms: int = CODE_TTL_MS,
        clock: Callable[[], int] = now_ms,
        rate_limiter: Optional[ClaimRateLimiter] = None,
        code_factory: Optional[Callable[[], str]] = None,
        logger: Optional[BridgeLogger] = None,
    ) -> None:
        self._ttl_ms = int(ttl_ms)
        self._clock = clock
        self._rate_limiter = rate_limiter or ClaimRateLimiter(clock=clock)
        self._code_factory = code_factory or generate_code
        self._logger = logger or BridgeLogger.disabled()
        self._pending: Dict[str, PendingPairing] = {}

    @property
    def rate_limiter(self) -> ClaimRateLimiter:
        return self._rate_limiter

    def create_pairing_request(self, handle: str) -> PairingOutcome:
        """Return the handle's pending code, refreshed, or a fresh one."""

        now = self._clock()
        for request in self._pending.values():
            if request.handle == handle and not request.claimed:
                request.created_at_ms = now
                return PairingOutcome(handle=handle, code=request.code)

        code = self._generate_unique_code()
        if code is None:
            self._logger.error(
                "pairing code generation exhausted",
                component="pairing",
                handle=handle,
                attempts=CODE_GENERATION_ATTEMPTS,
            )
            return PairingOutcome(handle=handle, error=PairingFailure.CODE_GENERATION_EXHAUSTED)

        self._pending[code] = PendingPairing(code=code, handle=handle, created_at_ms=now)
        self._logger.info("pairing code issued", component="pairing", handle=handle)
        return PairingOutcome(handle=handle, code=code)

    def check_claim_rate_limit(self, source_id: str) -> bool:
        return self._rate_limiter.check(source_id)

    def get_pairing_request(self, code: str) -> Optional[PendingPairing]:
        normalized = normalize_code(code)
        request = self._pending.get(normalized)
        if request is None:
            return None
        if self._is_expired(request, self._clock()):
            del self._pending[normalized]
            return None
        return request

    async def claim_pairing_code(
        self,
        code: str,
        config_port: ConfigPort,
        source_id: Optional[str] = None,
    ) -> PairingOutcome:
        """Approve a pending code and allow-list its handle.

        The lookup, the claim and the config read all happen before the
        first suspension point, so two concurrent claims of the same code
        cannot both succeed.
        """

        if source_id and not self._rate_limiter.check(source_id):
            self._logger.warn("pairing claim rate limited", component="pairing", source_id=source_id)
            return PairingOutcome(error=PairingFailure.RATE_LIMITED)

        normalized = normalize_code(code)
        request = self._pending.get(normalized)
        if request is None:
            return PairingOutcome(code=normalized, error=PairingFailure.INVALID_CODE)
        if self._is_expired(request, self._clock()):
            del self._pending[normalized]
            return PairingOutcome(code=normalized, error=PairingFailure.EXPIRED_CODE)
        if request.claimed:
            return PairingOutcome(code=normalized, error=PairingFailure.ALREADY_CLAIMED)

        request.claimed = True
        del self._pending[normalized]

        config = config_port.get_config()
        section = read_channel_section(config)
        raw_allow_from = section.get("allow_from")
        allow_from = list(raw_allow_from) if isinstance(raw_allow_from, list) else []
        if request.handle not in allow_from:
            allow_from.append(request.handle)
            await config_port.save_config(merge_channel_section(config, {"allow_from": allow_from}))
            self._logger.info("pairing approved", component="pairing", handle=request.handle)
        else:
            self._logger.info(
                "pairing approved for already allow-listed handle",
                component="pairing",
                handle=request.handle,
            )
        return PairingOutcome(handle=request.handle, code=normalized)

    def cleanup_expired_pairings(self) -> CleanupReport:
        now = self._clock()
        expired = [code for code, request in self._pending.items() if self._is_expired(request, now)]
        for code in expired:
            del self._pending[code]
        return CleanupReport(pairings_removed=len(expired), windows_removed=self._rate_limiter.sweep())

    def list_pairing_requests(self) -> List[PendingPairing]:
        now = self._clock()
        live: List[PendingPairing] = []
        for code, request in list(self._pending.items()):
            if self._is_expired(request, now):
                del self._pending[code]
                continue
            live.append(request)
        return live

    def expires_in_ms(self, request: PendingPairing) -> int:
        return max(0, request.created_at_ms + self._ttl_ms - self._clock())

    def _is_expired(self, request: PendingPairing, now: int) -> bool:
        return now - request.created_at_ms > self._ttl_ms

    def _generate_unique_code(self) -> Optional[str]:
        live_codes = {request.code for request in self._pending.values()}
        for _ in range(CODE_GENERATION_ATTEMPTS):
            code = self._code_factory()
            if code not in live_codes:
                return code
        return None

    def __len__(self) -> int:
        return len(self._pending)


def generate_code() -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))


def normalize_code(code: str) -> str:
    return str(code or "").strip().upper()


def build_pairing_message(code: str) -> str:
    """Plain-text reply for an unknown sender; iMessage renders no markup."""

    return "\n".join(
        [
            "Hi! I don't recognize your number yet.",
            "",
            "Your pairing code is: {0}".format(code),
            "",
            "To approve your contact, ask the bot owner to run:",
            "  {0} {1}".format(APPROVE_COMMAND, code),
            "",
            "This code expires in 15 minutes.",
        ]
    )
