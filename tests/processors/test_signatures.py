"""
Signature Matcher Tests

User-Agent catalogues, rule compilation and the browser fingerprint.
"""

import pytest

from gatekeeper.config import ConfigurationError
from gatekeeper.processors.signatures import (
    SignatureRule,
    check_browser_fingerprint,
    compile_rules,
    is_parser_flagged_bot,
    match_automation_tool,
    match_bot_user_agent,
    match_malicious_tool,
)

CHROME_UA = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

BROWSER_HEADERS = {
    "user-agent": CHROME_UA,
    "accept": "text/html,*/*;q=0.8",
    "accept-language": "en-US,en;q=0.9",
    "accept-encoding": "gzip, deflate, br",
}


# =============================================================================
# Bot User-Agents
# =============================================================================

class TestBotUserAgent:
    """Crawler and scripting-client catalogue."""

    @pytest.mark.parametrize("ua", [
        "curl/8.4.0",
        "Wget/1.21",
        "python-requests/2.31",
        "Go-http-client/1.1",
        "okhttp/4.12.0",
        "axios/1.6.0",
        "PostmanRuntime/7.36",
        "Mozilla/5.0 (compatible; Googlebot/2.1)",
        "SomeSpider/1.0",
    ])
    def test_scripted_clients_match(self, ua):
        assert match_bot_user_agent(ua) is True

    def test_empty_user_agent_counts_as_bot(self):
        assert match_bot_user_agent("") is True

    def test_browser_does_not_match(self):
        assert match_bot_user_agent(CHROME_UA) is False

    def test_case_insensitive(self):
        assert match_bot_user_agent("CURL/7.0") is True

    def test_parser_second_opinion(self):
        """ua-parser flags well-known crawlers but not browsers."""
        assert is_parser_flagged_bot("Mozilla/5.0 (compatible; Googlebot/2.1; +http://www.google.com/bot.html)")
        assert not is_parser_flagged_bot(CHROME_UA)
        assert not is_parser_flagged_bot("")


# =============================================================================
# Automation Tools
# =============================================================================

class TestAutomationTool:
    """Browser automation signatures are reported independently."""

    def test_headless_chrome(self):
        result = match_automation_tool("Mozilla/5.0 HeadlessChrome/120.0")
        assert result.automated
        assert result.tools == ("puppeteer",)

    def test_multiple_tools_reported(self):
        result = match_automation_tool("selenium webdriver playwright cypress")
        assert result.automated
        assert set(result.tools) == {"selenium", "playwright", "cypress"}

    def test_phantom(self):
        assert match_automation_tool("PhantomJS/2.1.1").tools == ("phantomjs",)

    def test_browser_is_not_automated(self):
        result = match_automation_tool(CHROME_UA)
        assert not result.automated
        assert result.tools == ()

    def test_empty_ua(self):
        assert not match_automation_tool("").automated


# =============================================================================
# Malicious Tools
# =============================================================================

class TestMaliciousTool:
    """Attack-tool catalogue."""

    @pytest.mark.parametrize("ua,tool", [
        ("sqlmap/1.7.2#stable (https://sqlmap.org)", "sqlmap"),
        ("Mozilla/5.00 (Nikto/2.1.6)", "nikto"),
        ("Nmap Scripting Engine", "nmap"),
        ("masscan/1.3", "masscan"),
        ("Acunetix-WVS", "acunetix"),
    ])
    def test_known_tools(self, ua, tool):
        assert tool in match_malicious_tool(ua)

    def test_browser_is_clean(self):
        assert match_malicious_tool(CHROME_UA) == []

    def test_empty_ua_is_clean(self):
        assert match_malicious_tool("") == []


# =============================================================================
# Rule Compilation
# =============================================================================

class TestCompileRules:
    """Catalogues compile up front and fail fast."""

    def test_valid_rules_compile(self):
        compiled = compile_rules([SignatureRule("x", r"abc"), SignatureRule("y", r"d+")])
        assert [name for name, _ in compiled] == ["x", "y"]
        assert compiled[0][1].search("xxABCxx")

    def test_invalid_pattern_raises(self):
        with pytest.raises(ConfigurationError):
            compile_rules([SignatureRule("broken", r"(unclosed")])

    def test_configuration_error_is_value_error(self):
        with pytest.raises(ValueError):
            compile_rules([SignatureRule("broken", r"[z-a]")])


# =============================================================================
# Browser Fingerprint
# =============================================================================

class TestBrowserFingerprint:
    """Header completeness check."""

    def test_full_browser_headers_are_legitimate(self):
        result = check_browser_fingerprint(BROWSER_HEADERS)
        assert result.legitimate
        assert result.score == 4
        assert result.checks["has_accept_language"]

    def test_presence_headers_add_to_score(self):
        headers = dict(BROWSER_HEADERS, dnt="", **{"upgrade-insecure-requests": "1"})
        assert check_browser_fingerprint(headers).score == 6

    def test_bare_client_is_not_legitimate(self):
        result = check_browser_fingerprint({"user-agent": "curl/8.0", "accept": "*/*"})
        assert not result.legitimate
        assert result.score == 2

    def test_empty_values_do_not_count(self):
        headers = dict(BROWSER_HEADERS, **{"accept-language": ""})
        result = check_browser_fingerprint(headers)
        assert not result.checks["has_accept_language"]
        assert not result.legitimate
