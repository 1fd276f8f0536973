"""
Proctoring violation taxonomy and security scoring rules.

Every client-reported violation type maps to a fixed severity and an action.
The security score of an attempt starts at 100 and is recomputed from the
full violation history plus the screen/network counters each time a new
violation arrives. An attempt is terminated once it has two critical
violations, three high ones, or its score drops below 30.
"""
import json
from collections import Counter
from typing import Any, Dict, Iterable, NamedTuple, Optional

from ..core.config import settings


class ViolationRule(NamedTuple):
    severity: str
    action: str
    description: str


VIOLATION_TYPES: Dict[str, ViolationRule] = {
    "clipboard": ViolationRule("medium", "warning", "Clipboard operation blocked"),
    "context_menu": ViolationRule("low", "warning", "Right-click blocked"),
    "dev_tools": ViolationRule("high", "terminate", "Developer tools access attempted"),
    "new_tab": ViolationRule("high", "terminate", "New tab attempt blocked"),
    "new_window": ViolationRule("high", "terminate", "New window attempt blocked"),
    "incognito": ViolationRule("high", "terminate", "Incognito window attempt blocked"),
    "close_tab": ViolationRule("medium", "warning", "Tab close attempt blocked"),
    "window_switch": ViolationRule("critical", "terminate", "Window switching detected"),
    "tab_switch": ViolationRule("critical", "terminate", "Tab switching detected"),
    "refresh": ViolationRule("medium", "warning", "Page refresh blocked"),
    "print": ViolationRule("medium", "warning", "Print attempt blocked"),
    "save": ViolationRule("medium", "warning", "Save attempt blocked"),
    "window_blur": ViolationRule("critical", "terminate", "Window lost focus"),
    "fullscreen_exit": ViolationRule("high", "terminate", "Fullscreen mode exited"),
    "multiple_monitors": ViolationRule("high", "terminate", "Multiple monitors detected"),
    "mouse_leave_top": ViolationRule("medium", "warning", "Mouse left the exam window"),
    "dev_tools_open": ViolationRule("high", "terminate", "Developer tools opened"),
    "network_disconnect": ViolationRule("high", "flag", "Network connection lost"),
    "auto_submit": ViolationRule("critical", "terminate", "Exam auto-submitted"),
}

SEVERITY_PENALTIES = {
    "low": 2,
    "medium": 5,
    "high": 15,
    "critical": 30,
}

MAX_DETAILS_LENGTH = 500
_UNSAFE_DETAIL_CHARS = str.maketrans("", "", "<>\"'&")


def get_violation_rule(violation_type: Optional[str]) -> Optional[ViolationRule]:
    if not violation_type:
        return None
    return VIOLATION_TYPES.get(violation_type)


def valid_violation_types() -> list:
    return list(VIOLATION_TYPES.keys())


def sanitize_details(details: Any) -> Optional[str]:
    if details is None:
        return None
    if not isinstance(details, str):
        details = json.dumps(details, default=str)
    return details.translate(_UNSAFE_DETAIL_CHARS)[:MAX_DETAILS_LENGTH]


def count_by_severity(severities: Iterable[str]) -> Counter:
    return Counter(severities)


def calculate_security_score(
    severities: Iterable[str],
    fullscreen_exits: int = 0,
    tab_switches: int = 0,
    network_disconnections: int = 0,
    detected_vpn: bool = False,
    detected_proxy: bool = False,
    is_secure_browser: bool = False,
) -> int:
    score = 100
    for severity in severities:
        score -= SEVERITY_PENALTIES.get(severity, 0)

    score -= (fullscreen_exits or 0) * 10
    score -= (tab_switches or 0) * 15
    score -= (network_disconnections or 0) * 10

    if detected_vpn:
        score -= 20
    if detected_proxy:
        score -= 20
    if not is_secure_browser:
        score -= 10

    return max(0, score)


def score_for_security(security) -> int:
    """Recompute the score of an ExamSecurity record from its violation rows."""
    return calculate_security_score(
        (v.severity for v in security.violations),
        fullscreen_exits=security.fullscreen_exits,
        tab_switches=security.tab_switches,
        network_disconnections=security.network_disconnections,
        detected_vpn=security.detected_vpn,
        detected_proxy=security.detected_proxy,
        is_secure_browser=security.is_secure_browser,
    )


def should_terminate(critical_count: int, high_count: int, security_score: int) -> bool:
    return (
        critical_count >= settings.max_critical_violations
        or security_score < settings.min_security_score
        or high_count >= settings.max_high_violations
    )


def remaining_violations(high_count: int, terminated: bool) -> int:
    """Warning budget shown to the student; counts down with high-severity violations."""
    if terminated:
        return 0
    return max(0, settings.violation_warning_budget - high_count)
