"""
Gatekeeper Signature Matchers

Static, pattern-based detection over request headers.
No state. No decisions. Pure matching.

Catalogues are declarative tables so they can be swapped or extended
without touching the matching functions. Patterns compile at import time;
a broken pattern aborts startup.
"""

import re
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Pattern, Sequence, Tuple

from user_agents import parse as parse_user_agent

from gatekeeper.config import ConfigurationError


# =============================================================================
# Rule Tables
# =============================================================================

@dataclass(frozen=True)
class SignatureRule:
    """One named pattern in a catalogue."""
    category: str
    pattern: str


BOT_USER_AGENT_RULES: Tuple[SignatureRule, ...] = tuple(
    SignatureRule("bot", p) for p in (
        r"bot", r"crawler", r"spider", r"scraper",
        r"curl", r"wget", r"python", r"java",
        r"go-http", r"okhttp", r"axios",
        r"postman", r"insomnia", r"httpie",
    )
)

AUTOMATION_TOOL_RULES: Tuple[SignatureRule, ...] = (
    SignatureRule("selenium", r"selenium|webdriver"),
    SignatureRule("puppeteer", r"puppeteer|headless"),
    SignatureRule("playwright", r"playwright"),
    SignatureRule("phantomjs", r"phantom"),
    SignatureRule("cypress", r"cypress"),
)

MALICIOUS_TOOL_RULES: Tuple[SignatureRule, ...] = (
    SignatureRule("sqlmap", r"sqlmap"),
    SignatureRule("nikto", r"nikto"),
    SignatureRule("nmap", r"nmap"),
    SignatureRule("masscan", r"masscan"),
    SignatureRule("nessus", r"nessus"),
    SignatureRule("openvas", r"openvas"),
    SignatureRule("acunetix", r"acunetix"),
    SignatureRule("burp", r"burp"),
    SignatureRule("metasploit", r"metasploit"),
    SignatureRule("havij", r"havij"),
)


def compile_rules(
    rules: Sequence[SignatureRule],
    flags: int = re.IGNORECASE
) -> List[Tuple[str, Pattern[str]]]:
    """
    Compile a rule table into (category, pattern) pairs.

    Raises:
        ConfigurationError: if any pattern is not a valid regex.
    """
    compiled: List[Tuple[str, Pattern[str]]] = []
    for rule in rules:
        try:
            compiled.append((rule.category, re.compile(rule.pattern, flags)))
        except re.error as e:
            raise ConfigurationError(
                f"Invalid signature pattern {rule.pattern!r} ({rule.category}): {e}"
            ) from e
    return compiled


_BOT_PATTERNS = compile_rules(BOT_USER_AGENT_RULES)
_AUTOMATION_PATTERNS = compile_rules(AUTOMATION_TOOL_RULES)
_MALICIOUS_PATTERNS = compile_rules(MALICIOUS_TOOL_RULES)


# =============================================================================
# User-Agent Matchers
# =============================================================================

@dataclass(frozen=True)
class AutomationMatch:
    """Result of the automation-tool check."""
    automated: bool
    tools: Tuple[str, ...] = ()


def match_bot_user_agent(ua: str) -> bool:
    """True if the UA is empty or matches the crawler/scripting catalogue."""
    if not ua:
        return True
    return any(pattern.search(ua) for _, pattern in _BOT_PATTERNS)


def match_automation_tool(ua: str) -> AutomationMatch:
    """Report every browser-automation signature present in the UA."""
    if not ua:
        return AutomationMatch(automated=False)
    tools = tuple(name for name, pattern in _AUTOMATION_PATTERNS if pattern.search(ua))
    return AutomationMatch(automated=bool(tools), tools=tools)


def match_malicious_tool(ua: str) -> List[str]:
    """Names of attack tools whose signature appears in the UA."""
    if not ua:
        return []
    return [name for name, pattern in _MALICIOUS_PATTERNS if pattern.search(ua)]


def is_parser_flagged_bot(ua: str) -> bool:
    """
    Second opinion from the ua-parser database.

    Catches crawler UAs that dodge the substring catalogue
    (e.g. 'Mediapartners-Google').
    """
    if not ua:
        return False
    return bool(parse_user_agent(ua).is_bot)


# =============================================================================
# Browser Fingerprint
# =============================================================================

FINGERPRINT_HEADERS: Tuple[Tuple[str, str], ...] = (
    ("has_user_agent", "user-agent"),
    ("has_accept", "accept"),
    ("has_accept_language", "accept-language"),
    ("has_accept_encoding", "accept-encoding"),
)

# Presence alone counts for these, even when empty
FINGERPRINT_PRESENCE_HEADERS: Tuple[Tuple[str, str], ...] = (
    ("has_dnt", "dnt"),
    ("has_upgrade_insecure_requests", "upgrade-insecure-requests"),
)

FINGERPRINT_MIN_SCORE = 4


@dataclass(frozen=True)
class FingerprintCheck:
    """How browser-like the header set looks."""
    legitimate: bool
    score: int
    checks: Dict[str, bool] = field(default_factory=dict)


def check_browser_fingerprint(headers: Mapping[str, str]) -> FingerprintCheck:
    """Count standard browser headers; fewer than four is not browser-like."""
    checks: Dict[str, bool] = {}
    for name, header in FINGERPRINT_HEADERS:
        checks[name] = bool(headers.get(header))
    for name, header in FINGERPRINT_PRESENCE_HEADERS:
        checks[name] = header in headers

    score = sum(1 for passed in checks.values() if passed)
    return FingerprintCheck(
        legitimate=score >= FINGERPRINT_MIN_SCORE,
        score=score,
        checks=checks,
    )
