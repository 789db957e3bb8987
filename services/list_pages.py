"""
Library list pages - URL building and parsing for a user's Douban shelves.

List pages are fetched in `mode=list`, 30 items per page, newest first.
Each row already carries the subject id, title, mark date and the user's
star rating, which become the ItemHint handed to the detail parser.
"""

import re
from typing import List, Optional

from bs4 import BeautifulSoup
from pydantic import BaseModel, Field

from models.record import Category, ItemHint, UserStatus, join_values

PAGE_SIZE = 30

CATEGORY_HOSTS = {
    Category.BOOKS: "book.douban.com",
    Category.MOVIES: "movie.douban.com",
}

_SUBJECT_LINK = re.compile(r"/subject/(\d{5,10})")
_LIST_RATING_CLASS = re.compile(r"rating(\d)-t")
_TOTAL = re.compile(r"/\s*(\d+)")
_DATE = re.compile(r"\d{4}-\d{2}-\d{2}")


class ListPage(BaseModel):
    """One parsed page of a user's shelf."""
    items: List[ItemHint] = Field(default_factory=list)
    total: Optional[int] = None
    has_more: bool = False


def build_list_url(user_id: str, category: Category, status: UserStatus, start: int = 0) -> str:
    host = CATEGORY_HOSTS[category]
    return (
        f"https://{host}/people/{user_id}/{status.value}"
        f"?start={start}&sort=time&rating=all&filter=all&mode=list"
    )


def build_detail_url(category: Category, subject_id: str) -> str:
    return f"https://{CATEGORY_HOSTS[category]}/subject/{subject_id}/"


def parse_list_page(
    html: str,
    category: Category,
    status: UserStatus,
    start: int = 0,
) -> ListPage:
    """Read the rows of one list page. Rows without a subject link are skipped."""
    soup = BeautifulSoup(html or "", "lxml")
    items = []

    for row in soup.select(".item-show"):
        link = row.select_one("div.title > a") or row.select_one("a[href*='/subject/']")
        if link is None:
            continue
        href = link.get("href", "")
        match = _SUBJECT_LINK.search(href)
        if not match:
            continue
        subject_id = match.group(1)

        date_block = row.select_one("div.date")
        mark_date = None
        rating = None
        if date_block is not None:
            date_match = _DATE.search(date_block.get_text(" "))
            mark_date = date_match.group(0) if date_match else None
            for span in date_block.select("span[class]"):
                rating_match = _LIST_RATING_CLASS.search(" ".join(span.get("class", [])))
                if rating_match:
                    rating = int(rating_match.group(1))
                    break

        # Tags and comment live in the collapsed grid block next to the row
        tags = None
        comment = None
        grid = soup.select_one(f"#grid{subject_id}")
        if grid is not None:
            tags_tag = grid.select_one(".tags")
            if tags_tag is not None:
                tags_text = re.sub(r"^\s*标签[:：]\s*", "", tags_tag.get_text(" "))
                tags = join_values(tags_text.split())
            comment_tag = grid.select_one(".comment")
            if comment_tag is not None:
                comment = comment_tag.get_text(" ").strip() or None

        items.append(ItemHint(
            subject_id=subject_id,
            category=category,
            title=" ".join(link.get_text().split()) or None,
            url=href,
            status=status,
            rating=rating,
            mark_date=mark_date,
            tags=tags,
            comment=comment,
        ))

    total = None
    total_tag = soup.select_one(".subject-num")
    if total_tag is not None:
        total_match = _TOTAL.search(total_tag.get_text())
        if total_match:
            total = int(total_match.group(1))

    has_more = len(items) == PAGE_SIZE
    if total is not None:
        has_more = has_more and start + len(items) < total

    return ListPage(items=items, total=total, has_more=has_more)
