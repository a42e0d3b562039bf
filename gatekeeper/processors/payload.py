"""
Gatekeeper Payload Scanner

Deep inspection of user-supplied values for injection payloads.
Extracts findings only. No blocking here.

Components:
- PayloadScanner: categorized regex tables with a bounded, TTL'd result cache
- EncodingDetector: layered-encoding heuristics
- FuzzDetector: fuzzing-input heuristics
- sanitize_payload: strip the most common script/SQL fragments
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Pattern, Sequence, Tuple
from urllib.parse import unquote

from gatekeeper.processors.signatures import SignatureRule, compile_rules


logger = logging.getLogger(__name__)


# =============================================================================
# Attack Signature Catalogue
# =============================================================================

PAYLOAD_RULES: Tuple[SignatureRule, ...] = (
    # Script injection
    SignatureRule("xss", r"<script[\s\S]*?>[\s\S]*?</script>"),
    SignatureRule("xss", r"javascript:"),
    SignatureRule("xss", r"on\w+\s*="),
    SignatureRule("xss", r"<iframe"),
    SignatureRule("xss", r"eval\s*\("),
    SignatureRule("xss", r"expression\s*\("),
    SignatureRule("xss", r"vbscript:"),
    SignatureRule("xss", r"data:text/html"),
    SignatureRule("xss", r"<embed"),
    SignatureRule("xss", r"<object"),
    # Query-language injection
    SignatureRule("sql", r"\bUNION\b.*\bSELECT\b"),
    SignatureRule("sql", r"\bSELECT\b.*\bFROM\b.*\bWHERE\b"),
    SignatureRule("sql", r";\s*DROP\s+TABLE"),
    SignatureRule("sql", r";\s*DELETE\s+FROM"),
    SignatureRule("sql", r"(\bEXEC\b|\bEXECUTE\b)\s*\("),
    SignatureRule("sql", r"\bINSERT\b.*\bINTO\b.*\bVALUES\b"),
    SignatureRule("sql", r"0x[0-9a-f]+"),
    SignatureRule("sql", r"\bOR\b\s+1\s*=\s*1"),
    SignatureRule("sql", r"\bAND\b\s+1\s*=\s*1"),
    SignatureRule("nosql", r"\$where"),
    SignatureRule("nosql", r"\$ne"),
    SignatureRule("nosql", r"\$gt"),
    SignatureRule("nosql", r"\$regex"),
    SignatureRule("nosql", r"\{\s*\$.*\}"),
    # Shell metacharacters
    SignatureRule("command", r"[;&|`]\s*(ls|cat|wget|curl|nc|bash|sh|cmd|powershell)"),
    SignatureRule("command", r"\$\(.*\)"),
    SignatureRule("command", r"`.*`"),
    SignatureRule("command", r"\|\s*\w+"),
    SignatureRule("ldap", r"\(\|"),
    SignatureRule("ldap", r"\(&"),
    SignatureRule("ldap", r"\(!"),
    SignatureRule("ldap", r"\*\)"),
    # Document/markup injection
    SignatureRule("xml", r"<!ENTITY"),
    SignatureRule("xml", r"<!DOCTYPE"),
    SignatureRule("xml", r"<!\[CDATA\["),
    SignatureRule("xml", r"&\w+;"),
    # Path traversal
    SignatureRule("traversal", r"\.\.[/\\]"),
    SignatureRule("traversal", r"%2e%2e[/\\]"),
    SignatureRule("traversal", r"\.\.%2f"),
    SignatureRule("traversal", r"\.\.%5c"),
    # Server-side request forgery
    SignatureRule("ssrf", r"file://"),
    SignatureRule("ssrf", r"gopher://"),
    SignatureRule("ssrf", r"dict://"),
    SignatureRule("ssrf", r"localhost"),
    SignatureRule("ssrf", r"127\.0\.0\.1"),
    SignatureRule("ssrf", r"0\.0\.0\.0"),
    SignatureRule("ssrf", r"169\.254\."),
)


# =============================================================================
# Results
# =============================================================================

@dataclass(frozen=True)
class ScanFinding:
    """A single matched signature."""
    category: str
    pattern: str


@dataclass(frozen=True)
class ScanResult:
    """Outcome of scanning one value."""
    malicious: bool
    findings: Tuple[ScanFinding, ...] = ()
    confidence: float = 0.0

    @property
    def categories(self) -> List[str]:
        seen: List[str] = []
        for finding in self.findings:
            if finding.category not in seen:
                seen.append(finding.category)
        return seen


CLEAN_RESULT = ScanResult(malicious=False)


def confidence_for(finding_count: int) -> float:
    """0 → 0.0, 1-2 → 0.4 per finding, 3+ → 1.0."""
    if finding_count <= 0:
        return 0.0
    if finding_count >= 3:
        return 1.0
    return finding_count * 0.4


def stringify(value: Any) -> str:
    """Scanner view of an arbitrary value. Unencodable nesting depth yields ""."""
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, sort_keys=True, default=str, ensure_ascii=False)
    except RecursionError:
        logger.warning("Value nested too deeply to stringify; scanning as empty")
        return ""
    except (TypeError, ValueError):
        return str(value)


# =============================================================================
# Payload Scanner
# =============================================================================

class PayloadScanner:
    """
    Scans values against categorized injection signatures.

    Results are cached by content hash. The cache is an LRU capped at
    `max_entries`; entries older than `ttl_ms` are treated as absent on
    read and dropped by `purge_expired()`.
    """

    def __init__(
        self,
        rules: Sequence[SignatureRule] = PAYLOAD_RULES,
        ttl_ms: float = 5 * 60 * 1000,
        max_entries: int = 10_000
    ) -> None:
        if ttl_ms <= 0 or max_entries <= 0:
            raise ValueError("ttl_ms and max_entries must be positive")

        self._rules: Dict[str, List[Tuple[str, Pattern[str]]]] = {}
        for category, pattern in compile_rules(rules):
            self._rules.setdefault(category, []).append((category, pattern))

        self.ttl_ms = ttl_ms
        self.max_entries = max_entries
        self._cache: "OrderedDict[str, Tuple[ScanResult, float]]" = OrderedDict()
        self._lock = threading.Lock()

    @property
    def categories(self) -> List[str]:
        return list(self._rules)

    def scan(
        self,
        value: Any,
        categories: Optional[Iterable[str]] = None,
        now: Optional[float] = None
    ) -> ScanResult:
        """
        Scan a value.

        Args:
            value: Any value; non-strings are JSON-stringified
            categories: Restrict to these categories (default: all)
            now: Clock override in milliseconds

        Returns:
            ScanResult. Never raises; missing input is clean.
        """
        if value is None or value == "":
            return CLEAN_RESULT

        now = time.time() * 1000.0 if now is None else now
        text = stringify(value)
        selected = self._select(categories)
        key = self._cache_key(text, selected)

        cached = self._cache_get(key, now)
        if cached is not None:
            return cached

        findings: List[ScanFinding] = []
        for category in selected:
            for _, pattern in self._rules[category]:
                if pattern.search(text):
                    findings.append(ScanFinding(category=category, pattern=pattern.pattern))

        result = ScanResult(
            malicious=bool(findings),
            findings=tuple(findings),
            confidence=confidence_for(len(findings)),
        )
        self._cache_put(key, result, now)
        return result

    def purge_expired(self, now: Optional[float] = None) -> int:
        """Drop cache entries past their TTL. Returns the count removed."""
        now = time.time() * 1000.0 if now is None else now
        with self._lock:
            expired = [k for k, (_, ts) in self._cache.items() if now - ts >= self.ttl_ms]
            for key in expired:
                del self._cache[key]
        return len(expired)

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()

    def cache_size(self) -> int:
        return len(self._cache)

    # -------------------------------------------------------------------------
    # Cache Helpers
    # -------------------------------------------------------------------------

    def _select(self, categories: Optional[Iterable[str]]) -> List[str]:
        if categories is None:
            return list(self._rules)
        return [c for c in categories if c in self._rules]

    def _cache_key(self, text: str, categories: List[str]) -> str:
        digest = hashlib.sha256()
        digest.update(",".join(categories).encode("utf-8"))
        digest.update(b"\x00")
        digest.update(text.encode("utf-8", errors="surrogatepass"))
        return digest.hexdigest()

    def _cache_get(self, key: str, now: float) -> Optional[ScanResult]:
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                return None
            result, ts = entry
            if now - ts >= self.ttl_ms:
                del self._cache[key]
                return None
            self._cache.move_to_end(key)
            return result

    def _cache_put(self, key: str, result: ScanResult, now: float) -> None:
        with self._lock:
            self._cache[key] = (result, now)
            self._cache.move_to_end(key)
            while len(self._cache) > self.max_entries:
                self._cache.popitem(last=False)


# =============================================================================
# Encoding Detector
# =============================================================================

@dataclass(frozen=True)
class EncodingReport:
    """Encodings spotted in a value."""
    encodings: Tuple[str, ...] = ()

    @property
    def encoded(self) -> bool:
        return bool(self.encodings)

    @property
    def suspicious(self) -> bool:
        # Stacked encodings are an evasion tell
        return len(self.encodings) > 2


@dataclass(frozen=True)
class DecodeReport:
    """Result of iterative decoding."""
    decoded: str
    iterations: int

    @property
    def suspicious(self) -> bool:
        return self.iterations > 2


_URL_ENCODED = re.compile(r"%[0-9a-f]{2}", re.IGNORECASE)
_HTML_ENTITY = re.compile(r"&#?\w+;")
_BASE64 = re.compile(r"[A-Za-z0-9+/]+=*")
_UNICODE_ESCAPE = re.compile(r"\\u[0-9a-f]{4}", re.IGNORECASE)
_HEX_LITERAL = re.compile(r"0x[0-9a-f]+", re.IGNORECASE)
_NUMERIC_ENTITY = re.compile(r"&#(\d+);")
_HEX_ENTITY = re.compile(r"&#x([0-9a-f]+);", re.IGNORECASE)


def _entity_to_char(code: int, original: str) -> str:
    try:
        return chr(code)
    except (ValueError, OverflowError):
        return original


class EncodingDetector:
    """Detects and unwraps layered encodings."""

    MAX_DECODE_ITERATIONS = 5

    @staticmethod
    def detect(value: Any) -> EncodingReport:
        if not isinstance(value, str) or not value:
            return EncodingReport()

        encodings: List[str] = []
        if _URL_ENCODED.search(value):
            encodings.append("url")
        if _HTML_ENTITY.search(value):
            encodings.append("html")
        if _BASE64.fullmatch(value) and len(value) % 4 == 0:
            encodings.append("base64")
        if _UNICODE_ESCAPE.search(value):
            encodings.append("unicode")
        if _HEX_LITERAL.search(value):
            encodings.append("hex")
        return EncodingReport(encodings=tuple(encodings))

    @classmethod
    def decode(cls, value: str) -> DecodeReport:
        decoded = value
        iterations = 0

        while iterations < cls.MAX_DECODE_ITERATIONS:
            before = decoded
            decoded = unquote(decoded)
            decoded = _NUMERIC_ENTITY.sub(
                lambda m: _entity_to_char(int(m.group(1)), m.group(0)), decoded
            )
            decoded = _HEX_ENTITY.sub(
                lambda m: _entity_to_char(int(m.group(1), 16), m.group(0)), decoded
            )
            if decoded == before:
                break
            iterations += 1

        return DecodeReport(decoded=decoded, iterations=iterations)


# =============================================================================
# Fuzz Detector
# =============================================================================

_REPEATING = re.compile(r"(.)\1{50,}", re.DOTALL)
_FORMAT_STRING = re.compile(r"%[sdxnp]")
_BOUNDARY_VALUES = re.compile(r"2147483647|4294967295|9223372036854775807")
# ASCII punctuation only; non-Latin scripts are ordinary chat text
_SPECIAL_CHAR = re.compile(r"[!-/:-@\[-`{-~]")


class FuzzDetector:
    """Flags inputs shaped like fuzzer output."""

    MAX_LENGTH = 10_000

    @classmethod
    def detect(cls, value: Any) -> List[str]:
        if not isinstance(value, str) or not value:
            return []

        patterns = {
            "long_string": len(value) > cls.MAX_LENGTH,
            "repeating": bool(_REPEATING.search(value)),
            "format_string": bool(_FORMAT_STRING.search(value)),
            "boundary": bool(_BOUNDARY_VALUES.search(value)),
            "special_chars": len(_SPECIAL_CHAR.findall(value)) > len(value) * 0.5,
        }
        return [name for name, hit in patterns.items() if hit]


# =============================================================================
# Sanitizer
# =============================================================================

_SCRIPT_BLOCK = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE)
_QUOTED_HANDLER = re.compile(r"""on\w+\s*=\s*["'][^"']*["']""", re.IGNORECASE)
_BARE_HANDLER = re.compile(r"on\w+\s*=\s*[^\s>]*", re.IGNORECASE)
_DANGEROUS_SCHEMES = re.compile(r"javascript:|vbscript:|data:text/html", re.IGNORECASE)
_SQL_VERBS = re.compile(r"\bUNION\b|\bSELECT\b|\bDROP\b|\bDELETE\b", re.IGNORECASE)


def sanitize_payload(value: Any) -> Any:
    """Strip script blocks, inline handlers, dangerous schemes and SQL verbs."""
    if not isinstance(value, str):
        return value

    cleaned = _SCRIPT_BLOCK.sub("", value)
    cleaned = _QUOTED_HANDLER.sub("", cleaned)
    cleaned = _BARE_HANDLER.sub("", cleaned)
    cleaned = _DANGEROUS_SCHEMES.sub("", cleaned)
    cleaned = _SQL_VERBS.sub("", cleaned)
    return cleaned


