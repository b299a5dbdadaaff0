"""
Rating Engine - Client Identity Fingerprinting

Derives a stable, pseudonymous identity from client-supplied environment
signals. Individual signal collectors may fail; the generator degrades to
a low-confidence fallback instead of raising.

Collectors (fixed order):
    navigator  platform, language, timezone
    screen     width x height, color depth, pixel ratio
    canvas     rendering digest reported by the client
    audio      audio-pipeline digest reported by the client
    hardware   cores, memory, touch points

Usage:
    from fingerprint import IdentityService

    identities = IdentityService()
    identity = identities.get_client_identity(signals, display_name="Ana")
    if not identity.is_available:
        ...  # IdentityUnavailable
"""

import hashlib
import json
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

from rating_models import ClientIdentity, IdentityConfidence
from scaling.cache import Cache, LocalCache

logger = logging.getLogger(__name__)

DISPLAY_NAME_MIN = 2
DISPLAY_NAME_MAX = 50

# Values clients report when a probe failed
FAILURE_MARKERS = {"", "unknown", "error", "canvas-error", "audio-error", "audio-not-supported", "none", "null"}


class InvalidDisplayName(ValueError):
    """Raised when a display name is outside the accepted length."""
    pass


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def _clean(value: Any) -> str | None:
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    if text.lower() in FAILURE_MARKERS:
        return None
    return text


class SignalCollector(ABC):
    """One source of identity signal. collect() never raises."""

    name: str = ""

    @abstractmethod
    def _read(self, signals: dict[str, Any]) -> str | None:
        """Return the normalized value or None when the signal is missing."""

    def collect(self, signals: dict[str, Any]) -> tuple[str | None, bool]:
        try:
            value = self._read(signals)
        except Exception as e:
            logger.debug(f"Collector {self.name} failed: {e}")
            return None, False
        return value, value is not None


class _FieldsCollector(SignalCollector):
    """Reads a nested mapping and joins the fields that are present."""

    section: str = ""
    fields: tuple[str, ...] = ()
    required: tuple[str, ...] = ()

    def _read(self, signals: dict[str, Any]) -> str | None:
        section = signals.get(self.section)
        if not isinstance(section, dict):
            return None
        values = {f: _clean(section.get(f)) for f in self.fields}
        if self.required and any(values[f] is None for f in self.required):
            return None
        present = [f"{f}:{v}" for f, v in values.items() if v is not None]
        return ",".join(present) or None


class NavigatorCollector(_FieldsCollector):
    name = "navigator"
    section = "navigator"
    fields = ("platform", "language", "timezone")


class ScreenCollector(_FieldsCollector):
    name = "screen"
    section = "screen"
    fields = ("width", "height", "color_depth", "pixel_ratio")
    required = ("width", "height")


class HardwareCollector(_FieldsCollector):
    name = "hardware"
    section = "hardware"
    fields = ("cores", "memory", "touch_points")


class _DigestCollector(SignalCollector):
    """Reads a digest string computed on the client."""

    def _read(self, signals: dict[str, Any]) -> str | None:
        value = signals.get(self.name)
        if not isinstance(value, str):
            return None
        return _clean(value)


class CanvasCollector(_DigestCollector):
    name = "canvas"


class AudioCollector(_DigestCollector):
    name = "audio"


DEFAULT_COLLECTORS: tuple[SignalCollector, ...] = (
    NavigatorCollector(),
    ScreenCollector(),
    CanvasCollector(),
    AudioCollector(),
    HardwareCollector(),
)


def _screen_size(signals: dict[str, Any]) -> str | None:
    screen = signals.get("screen")
    if not isinstance(screen, dict):
        return None
    width, height = _clean(screen.get("width")), _clean(screen.get("height"))
    if width is None or height is None:
        return None
    return f"{width}x{height}"


class FingerprintGenerator:
    """Combines collector output into a SHA-256 identity digest."""

    def __init__(self, collectors: tuple[SignalCollector, ...] | None = None):
        self.collectors = collectors or DEFAULT_COLLECTORS

    def generate(self, signals: Any, now: float | None = None) -> ClientIdentity:
        """
        Generate an identity from raw signals.

        Identical signals always produce the same HIGH-confidence digest.
        With no usable collector the digest falls back to user agent,
        screen size and timestamp (LOW confidence, not stable). Never raises.
        """
        now = time.time() if now is None else now
        if not isinstance(signals, dict):
            signals = {}

        parts = []
        used = []
        for collector in self.collectors:
            value, ok = collector.collect(signals)
            if ok:
                parts.append(f"{collector.name}={value}")
                used.append(collector.name)

        if parts:
            return ClientIdentity(
                digest=sha256_hex("|".join(parts)),
                confidence=IdentityConfidence.HIGH,
                signals_used=tuple(used),
                created_at=now,
            )

        return self._fallback(signals, now)

    def _fallback(self, signals: dict[str, Any], now: float) -> ClientIdentity:
        try:
            user_agent = _clean(signals.get("user_agent"))
            screen = _screen_size(signals)
        except Exception as e:
            logger.warning(f"Fallback fingerprint failed: {e}")
            return ClientIdentity.unavailable(now)

        if user_agent is None and screen is None:
            logger.warning("No identity signals available")
            return ClientIdentity.unavailable(now)

        logger.info("Using low-confidence fallback fingerprint")
        return ClientIdentity(
            digest=sha256_hex(f"fallback|{user_agent or ''}|{screen or ''}|{now!r}"),
            confidence=IdentityConfidence.LOW,
            signals_used=("fallback",),
            created_at=now,
        )


def validate_display_name(name: Any) -> str | None:
    """Trim and validate a display name; None passes through."""
    if name is None:
        return None
    if not isinstance(name, str):
        raise InvalidDisplayName("display_name must be a string")
    trimmed = name.strip()
    if len(trimmed) < DISPLAY_NAME_MIN:
        raise InvalidDisplayName(f"display_name must be at least {DISPLAY_NAME_MIN} characters")
    if len(trimmed) > DISPLAY_NAME_MAX:
        raise InvalidDisplayName(f"display_name must be at most {DISPLAY_NAME_MAX} characters")
    return trimmed


def _to_cache(identity: ClientIdentity) -> dict[str, Any]:
    return {
        "digest": identity.digest,
        "confidence": identity.confidence.value,
        "signals_used": list(identity.signals_used),
        "created_at": identity.created_at,
        "expires_at": identity.expires_at,
        "display_name": identity.display_name,
    }


def _from_cache(data: dict[str, Any]) -> ClientIdentity:
    return ClientIdentity(
        digest=data["digest"],
        confidence=IdentityConfidence(data["confidence"]),
        signals_used=tuple(data.get("signals_used") or ()),
        created_at=float(data["created_at"]),
        expires_at=data.get("expires_at"),
        display_name=data.get("display_name"),
    )


class IdentityService:
    """
    Persisted client identities.

    Identities are cached by session key for ttl_days. Entries are kept for
    a second period after expiry so a regenerated identity can inherit the
    client's display name.
    """

    CACHE_PREFIX = "identity:"

    def __init__(
        self,
        generator: FingerprintGenerator | None = None,
        cache: Cache | None = None,
        ttl_days: float = 30,
        clock: Callable[[], float] = time.time,
    ):
        self.generator = generator or FingerprintGenerator()
        self.cache = cache or LocalCache(clock=clock)
        self.ttl_seconds = ttl_days * 86400
        self._clock = clock

    @staticmethod
    def session_key_for(signals: Any) -> str:
        """Default session key: digest of the raw signals."""
        try:
            canonical = json.dumps(signals, sort_keys=True, default=str)
        except (TypeError, ValueError):
            canonical = repr(signals)
        return sha256_hex(canonical)

    def get_client_identity(
        self,
        signals: Any,
        session_key: str | None = None,
        display_name: str | None = None,
        now: float | None = None,
    ) -> ClientIdentity:
        """
        Return the persisted identity for this client, creating it if needed.

        Raises:
            InvalidDisplayName: If display_name is given and invalid
        """
        now = self._clock() if now is None else now
        display_name = validate_display_name(display_name)
        key = self.CACHE_PREFIX + (session_key or self.session_key_for(signals))

        previous = None
        cached = self.cache.get(key)
        if cached:
            try:
                previous = _from_cache(cached)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Discarding malformed cached identity: {e}")

        if previous is not None and previous.is_available and not previous.is_expired(now):
            if display_name and display_name != previous.display_name:
                previous = self._store(key, previous, display_name=display_name)
            return previous

        identity = self.generator.generate(signals, now)
        if not identity.is_available:
            return identity

        carried_name = display_name or (previous.display_name if previous else None)
        return self._store(
            key,
            identity,
            display_name=carried_name,
            expires_at=now + self.ttl_seconds,
        )

    def _store(self, key: str, identity: ClientIdentity, **changes) -> ClientIdentity:
        data = _to_cache(identity)
        data.update(changes)
        stored = _from_cache(data)
        self.cache.set(key, _to_cache(stored), ttl=self.ttl_seconds * 2)
        return stored

    def forget(self, session_key: str) -> bool:
        return self.cache.delete(self.CACHE_PREFIX + session_key)
