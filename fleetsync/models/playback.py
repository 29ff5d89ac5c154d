"""Phase, playback configuration and playlist models"""

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..exceptions import InvalidPhase


class Phase(str, Enum):
    """Segment of the live event timeline"""
    NEUTRAL = "neutral"
    BEFORE = "before"
    DURING = "during"
    AFTER = "after"

    @classmethod
    def parse(cls, value) -> "Phase":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise InvalidPhase(f"Unknown phase: {value!r}") from None


class MediaRef(BaseModel):
    """Media item as written in the playback configuration"""
    model_config = ConfigDict(extra="ignore")

    path: str = Field(min_length=1)
    name: Optional[str] = None


class TimeCategory(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str
    name: Optional[str] = None
    loop_videos: List[MediaRef] = Field(default_factory=list, alias="loopVideos")


class PlaybackConfiguration(BaseModel):
    """Subset of the site configuration the playlist depends on"""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    sponsors: List[MediaRef] = Field(default_factory=list)
    time_categories: List[TimeCategory] = Field(default_factory=list, alias="timeCategories")

    def category(self, category_id: str) -> Optional[TimeCategory]:
        for category in self.time_categories:
            if category.id == category_id:
                return category
        return None


@dataclass(frozen=True)
class PlaylistEntry:
    absolute_path: str
    display_name: str
