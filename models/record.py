"""
Canonical record model - the normalized shape of one synced Douban item.

Produced by the page parser, read by the mapper and reconciler. Instances
are frozen; parsing builds a dict and constructs the record once.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

LIST_DELIMITER = " / "


class ContentKind(str, Enum):
    """Source content taxonomy."""
    BOOK = "book"
    MOVIE = "movie"
    TV = "tv"
    DOCUMENTARY = "documentary"


class Category(str, Enum):
    """Douban sub-site a library listing is enumerated from."""
    BOOKS = "books"
    MOVIES = "movies"


class UserStatus(str, Enum):
    """Personal lifecycle state, named after Douban's URL segments."""
    WISH = "wish"
    DO = "do"
    COLLECT = "collect"


class ItemHint(BaseModel):
    """What the list page already told us about an item before its detail fetch."""
    model_config = ConfigDict(frozen=True)

    subject_id: Optional[str] = None
    category: Category = Category.BOOKS
    title: Optional[str] = None
    url: Optional[str] = None
    status: Optional[UserStatus] = None
    rating: Optional[int] = None
    mark_date: Optional[str] = None
    tags: Optional[str] = None
    comment: Optional[str] = None


class CanonicalRecord(BaseModel):
    """
    One parsed Douban item.

    Only `external_id` and `kind` are required. List-like fields are
    strings joined with LIST_DELIMITER.
    """
    model_config = ConfigDict(frozen=True)

    external_id: str = Field(..., min_length=1, description="Douban subject id")
    kind: ContentKind

    # === Shared ===
    title: Optional[str] = None
    original_title: Optional[str] = None
    douban_rating: Optional[float] = None
    summary: Optional[str] = None
    cover_image: Optional[str] = None
    genres: Optional[str] = None

    # === Book ===
    subtitle: Optional[str] = None
    authors: Optional[str] = None
    translators: Optional[str] = None
    publisher: Optional[str] = None
    publish_date: Optional[str] = None
    pages: Optional[str] = None
    price: Optional[str] = None
    binding: Optional[str] = None
    series: Optional[str] = None
    isbn: Optional[str] = None
    producer: Optional[str] = None

    # === Movie / TV ===
    directors: Optional[str] = None
    writers: Optional[str] = None
    cast: Optional[str] = None
    countries: Optional[str] = None
    languages: Optional[str] = None
    release_date: Optional[str] = None
    duration: Optional[str] = None
    episodes: Optional[str] = None
    episode_duration: Optional[str] = None
    imdb_id: Optional[str] = None

    # === User annotations ===
    my_status: Optional[UserStatus] = None
    my_rating: Optional[float] = None
    my_tags: Optional[str] = None
    my_comment: Optional[str] = None
    mark_date: Optional[str] = None

    @field_validator("external_id")
    @classmethod
    def _strip_external_id(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("external_id must not be blank")
        return v


def join_values(values) -> Optional[str]:
    """Join non-empty values with the list delimiter, keeping order and dropping repeats."""
    seen = []
    for value in values:
        if value is None:
            continue
        text = str(value).strip()
        if text and text not in seen:
            seen.append(text)
    return LIST_DELIMITER.join(seen) if seen else None
