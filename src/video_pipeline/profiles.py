"""Quality profiles for the transcode executor.

The 1080p tier currently reuses the 720p settings (height 720, 2.5M/5M).
Stored renditions were produced that way; keep the equivalence until the
tier is redefined.
"""

from dataclasses import dataclass
from typing import List


@dataclass(frozen=True)
class QualityProfile:
    """Scale/bitrate/buffer parameters for one quality tier."""
    scale_height: int
    max_bitrate: str     # ffmpeg -maxrate
    buffer_size: str     # ffmpeg -bufsize

    def ffmpeg_args(self) -> List[str]:
        return [
            "-vf", f"scale=-2:{self.scale_height}",
            "-maxrate", self.max_bitrate,
            "-bufsize", self.buffer_size,
        ]


PROFILE_480P = QualityProfile(scale_height=480, max_bitrate="1M", buffer_size="2M")
PROFILE_720P = QualityProfile(scale_height=720, max_bitrate="2.5M", buffer_size="5M")

QUALITY_PROFILES = {
    "480p": PROFILE_480P,
    "720p": PROFILE_720P,
    # TODO: confirm whether 1080p should scale to 1080 once storage budget allows
    "1080p": PROFILE_720P,
}

DEFAULT_PROFILE = PROFILE_720P

# Tiers fanned out for every upload, in scheduling order
DEFAULT_QUALITIES = ("480p", "720p", "1080p")


def quality_profile(quality: str) -> QualityProfile:
    """Return the profile for ``quality``; unrecognized tags get the 720p profile."""
    return QUALITY_PROFILES.get(quality, DEFAULT_PROFILE)
