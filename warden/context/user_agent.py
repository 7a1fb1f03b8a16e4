"""
User agent parsing.

Extracts browser, OS, device class and bot markers from user agent strings.
"""

from __future__ import annotations

import re

from warden.types import BrowserFamily, DeviceClass, DeviceTraits, OSFamily


class UserAgentParser:
    """
    User agent string parser.

    Pattern order matters: Edge and Opera both embed a Chrome token, so they
    are tried before Chrome.
    """

    BROWSER_PATTERNS = [
        (r"(?:Edg|EdgA|EdgiOS)/(\d+)", BrowserFamily.EDGE),
        (r"(?:OPR|Opera)/(\d+)", BrowserFamily.OPERA),
        (r"SamsungBrowser/(\d+)", BrowserFamily.SAMSUNG),
        (r"(?:Chrome|CriOS)/(\d+)", BrowserFamily.CHROME),
        (r"(?:Firefox|FxiOS)/(\d+)", BrowserFamily.FIREFOX),
        (r"(?:MSIE |Trident.*rv:)(\d+)", BrowserFamily.IE),
    ]

    OS_PATTERNS = [
        (r"Windows NT (\d+\.\d+)", OSFamily.WINDOWS),
        (r"(?:iPhone|iPad|iPod).*OS (\d+)", OSFamily.IOS),
        (r"Mac OS X (\d+[._]\d+)", OSFamily.MACOS),
        (r"Android (\d+)", OSFamily.ANDROID),
        (r"CrOS", OSFamily.CHROME_OS),
        (r"Linux", OSFamily.LINUX),
    ]

    BOT_PATTERNS = [
        r"bot",
        r"crawler",
        r"spider",
        r"scraper",
        r"Slurp",
        r"facebookexternalhit",
        r"curl",
        r"wget",
        r"python-requests",
        r"Go-http-client",
        r"okhttp",
        r"headless",
    ]

    MOBILE_PATTERNS = [
        r"Mobile",
        r"iPhone",
        r"iPod",
        r"BlackBerry",
        r"Windows Phone",
    ]

    TABLET_PATTERNS = [
        r"iPad",
        r"Android(?!.*Mobile)",
        r"Tablet",
    ]

    def parse(self, user_agent: str) -> DeviceTraits:
        """Parse a user agent string. Empty input yields all-unknown traits."""
        if not user_agent:
            return DeviceTraits()

        is_bot = False
        bot_name = None
        for pattern in self.BOT_PATTERNS:
            match = re.search(pattern, user_agent, re.IGNORECASE)
            if match:
                is_bot = True
                bot_name = match.group(0)
                break

        browser = BrowserFamily.UNKNOWN
        browser_version = None
        for pattern, family in self.BROWSER_PATTERNS:
            match = re.search(pattern, user_agent)
            if match:
                browser = family
                browser_version = match.group(1)
                break

        # Chrome carries a Safari token too, so Safari is only a fallback
        if browser == BrowserFamily.UNKNOWN and "Safari" in user_agent:
            browser = BrowserFamily.SAFARI
            match = re.search(r"Version/(\d+)", user_agent)
            if match:
                browser_version = match.group(1)
        elif browser == BrowserFamily.UNKNOWN and "Mozilla" in user_agent:
            browser = BrowserFamily.OTHER

        os_family = OSFamily.UNKNOWN
        os_version = None
        for pattern, family in self.OS_PATTERNS:
            match = re.search(pattern, user_agent)
            if match:
                os_family = family
                if match.lastindex:
                    os_version = match.group(1).replace("_", ".")
                break

        if is_bot:
            device_class = DeviceClass.BOT
        elif any(re.search(p, user_agent) for p in self.TABLET_PATTERNS):
            device_class = DeviceClass.TABLET
        elif any(re.search(p, user_agent) for p in self.MOBILE_PATTERNS):
            device_class = DeviceClass.MOBILE
        elif os_family in (OSFamily.WINDOWS, OSFamily.MACOS, OSFamily.LINUX, OSFamily.CHROME_OS):
            device_class = DeviceClass.DESKTOP
        else:
            device_class = DeviceClass.UNKNOWN

        return DeviceTraits(
            browser=browser,
            browser_version=browser_version,
            os=os_family,
            os_version=os_version,
            device_class=device_class,
            is_mobile=device_class in (DeviceClass.MOBILE, DeviceClass.TABLET),
            is_bot=is_bot,
            bot_name=bot_name,
        )
