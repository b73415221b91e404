"""
IOCSentry Indicator Classifier

Detects the type of a raw indicator string and normalizes it into its
canonical form. Detection order is fixed: hash, IP, URL, domain.
"""

import ipaddress
import re
from typing import Iterable
from urllib.parse import urlsplit, urlunsplit

import structlog

from iocsentry.lookup.errors import ClassificationError
from iocsentry.lookup.models import Indicator, IndicatorType

logger = structlog.get_logger(__name__)


HASH_LENGTHS = {32: "md5", 40: "sha1", 64: "sha256"}

_HEX_RE = re.compile(r"^[0-9a-fA-F]+$")
_IPV4_SHAPE_RE = re.compile(r"^[0-9]{1,3}(?:\.[0-9]{1,3}){3}$")
_SCHEME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9+.-]*://")
_LABEL_RE = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")
_TLD_RE = re.compile(r"^(?:[a-z]{2,63}|xn--[a-z0-9-]{1,59})$")

DEFAULT_PORTS = {"http": 80, "https": 443, "ftp": 21}


def hash_algorithm(value: str) -> str | None:
    """Return md5/sha1/sha256 for a hex digest, None otherwise."""
    if not _HEX_RE.match(value):
        return None
    return HASH_LENGTHS.get(len(value))


class IndicatorClassifier:
    """
    Classifies and normalizes raw indicator strings.

    Pure and non-blocking; safe to share between tasks.
    """

    def classify(self, raw: str) -> Indicator:
        """
        Classify a raw string.

        Args:
            raw: Untrusted user input

        Returns:
            Indicator with canonical form and type

        Raises:
            ClassificationError: Input is empty or not a recognizable indicator
        """
        value = (raw or "").strip()
        if not value:
            raise ClassificationError("Empty indicator", raw=raw or "")

        if hash_algorithm(value):
            return Indicator(value.lower(), IndicatorType.HASH, raw=raw)

        ip = self._normalize_ip(value, raw)
        if ip is not None:
            return Indicator(ip, IndicatorType.IP, raw=raw)

        if _SCHEME_RE.match(value):
            return Indicator(self._normalize_url(value, raw), IndicatorType.URL, raw=raw)

        domain = self._normalize_domain(value)
        if domain is not None:
            return Indicator(domain, IndicatorType.DOMAIN, raw=raw)

        raise ClassificationError("Not a recognizable IP, domain, URL or hash", raw=raw)

    def classify_many(self, raws: Iterable[str]) -> list[Indicator | ClassificationError]:
        """
        Classify a batch without failing on malformed items.

        Returns:
            One entry per input, in input order: the Indicator, or the
            ClassificationError for a rejected string
        """
        classified: list[Indicator | ClassificationError] = []

        for raw in raws:
            try:
                classified.append(self.classify(raw))
            except ClassificationError as e:
                classified.append(e)

        rejected = sum(1 for c in classified if isinstance(c, ClassificationError))
        if rejected:
            logger.debug("classification_rejected", count=rejected)

        return classified

    # =========================================================================
    # Normalizers
    # =========================================================================

    def _normalize_ip(self, value: str, raw: str) -> str | None:
        """Canonical dotted-decimal (or compressed IPv6) form, or None."""
        if _IPV4_SHAPE_RE.match(value):
            octets = [int(part) for part in value.split(".")]
            if any(o > 255 for o in octets):
                raise ClassificationError("IPv4 octet out of range", raw=raw)
            return str(ipaddress.IPv4Address(".".join(str(o) for o in octets)))

        if ":" in value and "/" not in value:
            try:
                return ipaddress.IPv6Address(value).compressed
            except ValueError:
                return None

        return None

    def _normalize_url(self, value: str, raw: str) -> str:
        """Defragment, lower-case scheme and host, strip default ports."""
        try:
            parts = urlsplit(value)
            port = parts.port
        except ValueError as e:
            raise ClassificationError(f"Malformed URL: {e}", raw=raw)

        host = parts.hostname
        if not host:
            raise ClassificationError("URL has no host", raw=raw)

        scheme = parts.scheme.lower()
        if ":" in host:
            host = f"[{host}]"

        netloc = host
        if parts.username is not None:
            userinfo = parts.username
            if parts.password is not None:
                userinfo += f":{parts.password}"
            netloc = f"{userinfo}@{netloc}"
        if port is not None and DEFAULT_PORTS.get(scheme) != port:
            netloc = f"{netloc}:{port}"

        path = parts.path or "/"
        return urlunsplit((scheme, netloc, path, parts.query, ""))

    def _normalize_domain(self, value: str) -> str | None:
        """Lower-cased domain, or None if the shape is invalid."""
        domain = value.lower().rstrip(".")
        if len(domain) > 253 or "." not in domain:
            return None

        labels = domain.split(".")
        if not all(_LABEL_RE.match(label) for label in labels):
            return None
        if not _TLD_RE.match(labels[-1]):
            return None

        return domain


# Singleton instance
_classifier_instance: IndicatorClassifier | None = None


def get_classifier() -> IndicatorClassifier:
    """Get or create the global classifier."""
    global _classifier_instance
    if _classifier_instance is None:
        _classifier_instance = IndicatorClassifier()
    return _classifier_instance
