"""
Read-only view over the host's cookie jar.
"""

from types import MappingProxyType
from typing import Dict, Mapping, Optional


def parse_cookie_string(raw: str) -> Dict[str, str]:
    """Parse a ``name=value; name2=value2`` header into a dict."""
    cookies = {}
    for part in raw.split(';'):
        if '=' not in part:
            continue
        name, value = part.split('=', 1)
        name = name.strip()
        if name:
            cookies[name] = value.strip()
    return cookies


class SessionStore:
    """
    Cookies per platform, as supplied by the host environment.

    Clients only read from the store; there is no mutation API.
    """

    def __init__(self, cookies: Optional[Mapping[str, Mapping[str, str]]] = None):
        self._cookies = {
            platform: MappingProxyType(dict(values))
            for platform, values in (cookies or {}).items()
        }

    @classmethod
    def from_cookie_strings(cls, strings: Mapping[str, str]) -> "SessionStore":
        return cls({platform: parse_cookie_string(raw) for platform, raw in strings.items()})

    @classmethod
    def from_config(cls, config) -> "SessionStore":
        return cls.from_cookie_strings(config.cookies)

    def cookies_for(self, platform: str) -> Mapping[str, str]:
        return self._cookies.get(platform, MappingProxyType({}))

    def cookie(self, platform: str, name: str) -> Optional[str]:
        return self.cookies_for(platform).get(name)

    def cookie_header(self, platform: str) -> Optional[str]:
        cookies = self.cookies_for(platform)
        if not cookies:
            return None
        return "; ".join(f"{k}={v}" for k, v in cookies.items())
