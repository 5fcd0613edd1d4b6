"""Device-emulation profiles presented by the browser and HTTP client."""

from __future__ import annotations

import random
from typing import Optional

from .models import Account, DeviceProfile, Geolocation

_BERLIN = Geolocation(latitude=52.520008, longitude=13.404954, accuracy=50)

DEVICE_PROFILES = (
    DeviceProfile(
        id="de-win-chrome",
        user_agent=(
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36"
        ),
        viewport_width=1366,
        viewport_height=768,
        platform="Win32",
        geolocation=_BERLIN,
    ),
    DeviceProfile(
        id="de-mac-chrome",
        user_agent=(
            "Mozilla/5.0 (Macintosh; Intel Mac OS X 13_6_0) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36"
        ),
        viewport_width=1440,
        viewport_height=900,
        platform="MacIntel",
        geolocation=_BERLIN,
    ),
    DeviceProfile(
        id="de-win-firefox",
        user_agent="Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:122.0) Gecko/20100101 Firefox/122.0",
        viewport_width=1536,
        viewport_height=864,
        platform="Win32",
        geolocation=_BERLIN,
    ),
)

DEFAULT_PROFILE = DEVICE_PROFILES[0]


def pick_device_profile(rng: Optional[random.Random] = None) -> DeviceProfile:
    chooser = rng or random
    return chooser.choice(DEVICE_PROFILES)


def profile_by_id(profile_id: str) -> Optional[DeviceProfile]:
    for profile in DEVICE_PROFILES:
        if profile.id == profile_id:
            return profile
    return None


def device_profile_for(account: Account, rng: Optional[random.Random] = None) -> DeviceProfile:
    """Return the account's pinned profile, falling back to a random built-in one."""

    pinned = account.device_profile
    if isinstance(pinned, DeviceProfile):
        return pinned
    if isinstance(pinned, str) and pinned:
        known = profile_by_id(pinned)
        if known is not None:
            return known
    return pick_device_profile(rng)
