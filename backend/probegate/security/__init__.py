# probegate/security/__init__.py
"""
Request-boundary security: SSRF policy and input validation.
"""

from probegate.security.ssrf import SsrfPolicy, is_blocked_ip
from probegate.security.validation import HostInputValidator, sanitize_host

__all__ = ["SsrfPolicy", "HostInputValidator", "is_blocked_ip", "sanitize_host"]
