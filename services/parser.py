"""
Page Parser - Turns one Douban subject page into a CanonicalRecord.

Douban markup differs between item vintages (old books have no JSON-LD,
some films carry no runtime microdata, TV pages reuse movie labels), so
no single selector is reliable. Each attribute has an ordered list of
pure strategies `(DetailPage) -> Optional[value]`; the first non-empty
result wins.

Missing attributes never raise. Only an unresolvable subject id does
(ParseIncomplete), which the orchestrator counts as an item failure.
"""

import json
import logging
import re
from typing import Any, Callable, Iterable, List, Optional

from bs4 import BeautifulSoup

from models.record import (
    CanonicalRecord,
    Category,
    ContentKind,
    ItemHint,
    UserStatus,
    join_values,
)

logger = logging.getLogger("shelfsync")

SUBJECT_ID_PATTERN = re.compile(r"/subject/(\d+)")
DATE_PATTERN = re.compile(r"\d{4}-\d{1,2}-\d{1,2}|\d{4}年\d{1,2}月\d{1,2}日")
MULTI_VALUE_SPLIT = re.compile(r"\s*[/,、]\s*")

# Labels whose values are lists, read from links or split on separators
MULTI_VALUE_LABELS = {"作者", "译者", "导演", "编剧", "主演", "类型", "制片国家/地区", "语言"}

# Label text that leaks into the regex fallbacks when a line break is missing
TRAILING_LABELS = re.compile(
    r"\s*(语言|上映日期|首播|片长|又名|IMDb|集数|单集片长|制片国家/地区)\s*[:：].*$"
)

STATUS_WORDS = [
    (UserStatus.WISH, ("想读", "想看", "想听")),
    (UserStatus.DO, ("在读", "在看", "在听")),
    (UserStatus.COLLECT, ("读过", "看过", "听过")),
]

DOCUMENTARY_KEYWORDS = ("纪录片", "documentary")
TV_KEYWORDS = ("电视剧", "tv", "series", "剧集", "连续剧", "网剧")

IGNORED_LINK_TEXT = {"更多...", "更多", "..."}


class ParseIncomplete(Exception):
    """Raised when a page does not yield the mandatory subject id."""

    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(f"Parse incomplete for {url}: {reason}")


class InfoEntry:
    """One labeled line of the #info block."""

    __slots__ = ("label", "text", "links")

    def __init__(self, label: str, text: str, links: List[str]):
        self.label = label
        self.text = text
        self.links = links

    def values(self) -> List[str]:
        if self.links:
            return self.links
        return [v for v in MULTI_VALUE_SPLIT.split(self.text) if v]


class DetailPage:
    """A fetched subject page, pre-digested once for all strategies."""

    def __init__(self, html: str):
        self.html = html or ""
        self.soup = BeautifulSoup(self.html, "lxml")
        self.json_ld = _load_json_ld(self.soup)
        self.info = self.soup.select_one("#info")
        self.info_html = str(self.info) if self.info else ""
        self.info_text = self.info.get_text("\n") if self.info else ""
        self.labels = _read_info_entries(self.info_html)

    def label(self, name: str) -> Optional[InfoEntry]:
        return self.labels.get(name)

    def meta(self, prop: str) -> Optional[str]:
        tag = self.soup.select_one(f'meta[property="{prop}"]')
        if tag is None:
            return None
        return _clean(tag.get("content"))


Strategy = Callable[[DetailPage], Any]


def first_of(page: DetailPage, strategies: Iterable[Strategy]) -> Any:
    """Evaluate strategies in order; return the first non-empty result."""
    for strategy in strategies:
        value = strategy(page)
        if value not in (None, "", [], ()):
            return value
    return None


# ── Low-level helpers ────────────────────────────────────────────────────────


def _clean(text: Optional[str]) -> Optional[str]:
    if text is None:
        return None
    text = re.sub(r"[ \t\r\f\v\u00a0\u3000]+", " ", str(text)).strip()
    return text or None


def _load_json_ld(soup: BeautifulSoup) -> dict:
    """Douban embeds JSON-LD with raw control characters, so parse non-strictly."""
    script = soup.select_one('script[type="application/ld+json"]')
    if script is None:
        return {}
    try:
        data = json.loads(script.get_text(), strict=False)
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _read_info_entries(info_html: str) -> dict:
    """
    Split the #info block on <br> and read one label per line.

    A line's value is its link texts when it has links, otherwise the text
    after the label with the leading colon removed.
    """
    entries = {}
    if not info_html:
        return entries

    for fragment in re.split(r"<br\s*/?>", info_html, flags=re.IGNORECASE):
        segment = BeautifulSoup(fragment, "lxml")
        label_tag = segment.select_one("span.pl")
        if label_tag is None:
            continue

        raw_label = label_tag.get_text()
        label = raw_label.replace(":", "").replace("：", "").strip()
        if not label or label in entries:
            continue

        full_text = segment.get_text(" ")
        _, _, after = full_text.partition(raw_label)
        text = _clean(after.lstrip().lstrip(":：")) or ""

        links = []
        for a in segment.select("a"):
            link_text = _clean(a.get_text())
            if link_text and link_text not in IGNORED_LINK_TEXT:
                links.append(link_text)
        entries[label] = InfoEntry(label, text, links)

    return entries


def _ld_names(value) -> List[str]:
    if isinstance(value, dict):
        value = [value]
    if not isinstance(value, list):
        return []
    names = []
    for person in value:
        if isinstance(person, dict) and person.get("name"):
            names.append(str(person["name"]).strip())
        elif isinstance(person, str):
            names.append(person.strip())
    return names


def _texts(page: DetailPage, selector: str) -> List[str]:
    return [t for t in (_clean(tag.get_text()) for tag in page.soup.select(selector)) if t]


def _text_of(page: DetailPage, selector: str) -> Optional[str]:
    tag = page.soup.select_one(selector)
    return _clean(tag.get_text()) if tag is not None else None


def _label_text(name: str) -> Strategy:
    def strategy(page: DetailPage) -> Optional[str]:
        entry = page.label(name)
        if entry is None:
            return None
        if name in MULTI_VALUE_LABELS:
            return join_values(entry.values())
        return entry.text or (join_values(entry.links) if entry.links else None)
    return strategy


def _label_or_link(name: str) -> Strategy:
    """Labels like 出版社 whose value is a link on newer pages and bare text on older ones."""
    def strategy(page: DetailPage) -> Optional[str]:
        entry = page.label(name)
        if entry is None:
            return None
        return entry.links[0] if entry.links else (entry.text or None)
    return strategy


def _info_regex(pattern: str) -> Strategy:
    compiled = re.compile(pattern)

    def strategy(page: DetailPage) -> Optional[str]:
        match = compiled.search(page.info_text)
        if not match:
            return None
        value = TRAILING_LABELS.sub("", match.group(1))
        return join_values(MULTI_VALUE_SPLIT.split(value.strip()))
    return strategy


# ── Shared strategies ────────────────────────────────────────────────────────


def _id_from_json_ld(page: DetailPage) -> Optional[str]:
    match = SUBJECT_ID_PATTERN.search(str(page.json_ld.get("url", "")))
    return match.group(1) if match else None


def _id_from_canonical(page: DetailPage) -> Optional[str]:
    link = page.soup.select_one('link[rel="canonical"]')
    match = SUBJECT_ID_PATTERN.search(link.get("href", "")) if link else None
    return match.group(1) if match else None


def _id_from_og_url(page: DetailPage) -> Optional[str]:
    match = SUBJECT_ID_PATTERN.search(page.meta("og:url") or "")
    return match.group(1) if match else None


ID_STRATEGIES = [_id_from_json_ld, _id_from_canonical, _id_from_og_url]

TITLE_STRATEGIES = [
    lambda p: _clean(p.json_ld.get("name")),
    lambda p: _text_of(p, 'span[property="v:itemreviewed"]'),
    lambda p: p.meta("og:title"),
    lambda p: _clean(p.soup.title.get_text().replace("(豆瓣)", "")) if p.soup.title else None,
]

RATING_STRATEGIES = [
    lambda p: _text_of(p, 'strong[property="v:average"]'),
    lambda p: _clean(str((p.json_ld.get("aggregateRating") or {}).get("ratingValue", ""))),
    lambda p: _text_of(p, "#interest_sectl strong.rating_num"),
]


def _summary_hidden(page: DetailPage) -> Optional[str]:
    """Long intros sit in a hidden span; the visible one is truncated."""
    block = page.soup.select_one("#link-report span.all.hidden .intro") or \
        page.soup.select_one("#link-report span.all.hidden")
    if block is None:
        return None
    return _paragraphs(block)


def _summary_intro(page: DetailPage) -> Optional[str]:
    block = page.soup.select_one("#link-report .intro") or page.soup.select_one(".intro")
    return _paragraphs(block) if block is not None else None


def _summary_microdata(page: DetailPage) -> Optional[str]:
    block = page.soup.select_one('span[property="v:summary"]')
    return _paragraphs(block) if block is not None else None


def _paragraphs(block) -> Optional[str]:
    paragraphs = [t for t in (_clean(p.get_text()) for p in block.select("p")) if t]
    if paragraphs:
        return "\n".join(paragraphs)
    lines = [t for t in (_clean(line) for line in block.get_text("\n").split("\n")) if t]
    return "\n".join(lines) or None


SUMMARY_STRATEGIES = [
    _summary_hidden,
    _summary_microdata,
    _summary_intro,
    lambda p: _clean(p.json_ld.get("description")),
    lambda p: p.meta("og:description"),
]

def _cover_mainpic(page: DetailPage) -> Optional[str]:
    img = page.soup.select_one("#mainpic img")
    return _clean(img.get("src")) if img is not None else None


COVER_STRATEGIES = [
    _cover_mainpic,
    lambda p: p.meta("og:image"),
    lambda p: _clean(p.json_ld.get("image")),
]


# ── User annotations ─────────────────────────────────────────────────────────


def _interest_block(page: DetailPage):
    return page.soup.select_one("#interest_sect_level")


def _my_rating_input(page: DetailPage) -> Optional[str]:
    tag = page.soup.select_one("input#n_rating")
    value = _clean(tag.get("value")) if tag else None
    return value if value and value.isdigit() and value != "0" else None


def _my_rating_stars(page: DetailPage) -> Optional[str]:
    block = _interest_block(page)
    if block is None:
        return None
    for span in block.select("span[class]"):
        for cls in span.get("class", []):
            match = re.fullmatch(r"allstar(\d)0", cls)
            if match and match.group(1) != "0":
                return match.group(1)
    return None


def _status_from_text(text: Optional[str]) -> Optional[UserStatus]:
    if not text:
        return None
    for status, words in STATUS_WORDS:
        if any(word in text for word in words):
            return status
    return None


def _my_status(page: DetailPage) -> Optional[UserStatus]:
    block = _interest_block(page)
    tag = block.select_one("span.mr10") if block else None
    return _status_from_text(tag.get_text()) if tag else None


def _my_mark_date(page: DetailPage) -> Optional[str]:
    block = _interest_block(page)
    if block is None:
        return None
    status_tag = block.select_one("span.mr10")
    if status_tag is not None:
        sibling = status_tag.find_next_sibling("span")
        if sibling is not None:
            match = DATE_PATTERN.search(sibling.get_text())
            if match:
                return match.group(0)
    match = DATE_PATTERN.search(block.get_text(" "))
    return match.group(0) if match else None


def _my_tags(page: DetailPage) -> Optional[str]:
    block = _interest_block(page)
    if block is None:
        return None
    match = re.search(r"标签[:：]\s*([^\n]+)", block.get_text("\n"))
    if not match:
        return None
    return join_values(match.group(1).split())


def _my_comment(page: DetailPage) -> Optional[str]:
    """The comment is the first unclassed span after status, date, stars and tags."""
    block = _interest_block(page)
    if block is None:
        return None
    for container in [block] + block.select("div"):
        for span in container.find_all("span", recursive=False):
            classes = " ".join(span.get("class", []))
            if re.search(r"mr10|color_gray|allstar|rating", classes) or span.find("a"):
                continue
            text = _clean(span.get_text())
            if not text or text.startswith("标签") or DATE_PATTERN.fullmatch(text):
                continue
            return text
    return None


# ── Book strategies ──────────────────────────────────────────────────────────


def _normalize_publish_date(value: Optional[str]) -> Optional[str]:
    """'2006-5' / '2006年5月' -> '2006-05'; full dates get a zero-padded day too."""
    if not value:
        return None
    match = re.search(r"(\d{4})\s*[-年./]\s*(\d{1,2})(?:\s*[-月./]\s*(\d{1,2}))?", value)
    if not match:
        year = re.search(r"\d{4}", value)
        return year.group(0) if year else value
    year, month, day = match.groups()
    if day:
        return f"{year}-{int(month):02d}-{int(day):02d}"
    return f"{year}-{int(month):02d}"


def _normalize_publisher(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    value = value.split(";")[0].split("；")[0]
    return join_values(re.split(r"\s*/\s*", value))


def _normalize_isbn(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    match = re.search(r"\d{13}|\d{9}[\dXx]", value.replace("-", ""))
    return match.group(0).upper() if match else None


BOOK_STRATEGIES = {
    "subtitle": [_label_text("副标题")],
    "original_title": [_label_text("原作名")],
    "authors": [
        _label_text("作者"),
        lambda p: join_values(_ld_names(p.json_ld.get("author"))),
        _info_regex(r"作者\s*[:：]\s*([^\n]+)"),
    ],
    "translators": [_label_text("译者"), _info_regex(r"译者\s*[:：]\s*([^\n]+)")],
    "publisher": [
        lambda p: _normalize_publisher(_label_or_link("出版社")(p)),
        lambda p: _normalize_publisher(_info_regex(r"出版社\s*[:：]\s*([^\n]+)")(p)),
    ],
    "producer": [_label_or_link("出品方")],
    "publish_date": [lambda p: _normalize_publish_date(_label_text("出版年")(p))],
    "pages": [_label_text("页数")],
    "price": [_label_text("定价")],
    "binding": [_label_text("装帧")],
    "series": [_label_or_link("丛书")],
    "isbn": [
        lambda p: _normalize_isbn(_label_text("ISBN")(p)),
        lambda p: _normalize_isbn(str(p.json_ld.get("isbn", ""))),
    ],
}


# ── Movie / TV strategies ────────────────────────────────────────────────────


def _runtime_microdata(page: DetailPage) -> Optional[str]:
    tag = page.soup.select_one('span[property="v:runtime"]')
    if tag is None:
        return None
    text = _clean(tag.get_text())
    if text and not text.isdigit():
        return text
    digits = re.sub(r"\D", "", str(tag.get("content", "")) or (text or ""))
    return f"{digits}分钟" if digits else None


def _runtime_label_html(page: DetailPage) -> Optional[str]:
    match = re.search(r"片长:</span>\s*([^<]+)", page.info_html)
    return _clean(match.group(1).rstrip(" /")) if match else None


def _runtime_minutes(page: DetailPage) -> Optional[str]:
    match = re.search(r"(\d+)分钟", page.info_text)
    return f"{match.group(1)}分钟" if match else None


def _runtime_minutes_seconds(page: DetailPage) -> Optional[str]:
    match = re.search(r"(\d+)分(\d+)秒", page.info_text)
    return f"{match.group(1)}分{match.group(2)}秒" if match else None


def _release_microdata(page: DetailPage) -> Optional[str]:
    """All regional release dates, in page order."""
    return join_values(_texts(page, 'span[property="v:initialReleaseDate"]'))


def _release_any_date(page: DetailPage) -> Optional[str]:
    match = re.search(r"\d{4}-\d{2}-\d{2}(?:\([^)]*\))?", page.info_text)
    return match.group(0) if match else None


def _microdata_list(selector: str) -> Strategy:
    return lambda p: join_values(_texts(p, selector))


def _ld_list(key: str) -> Strategy:
    def strategy(page: DetailPage) -> Optional[str]:
        value = page.json_ld.get(key)
        if isinstance(value, list) and value and isinstance(value[0], str):
            return join_values(value)
        return join_values(_ld_names(value))
    return strategy


MOVIE_STRATEGIES = {
    "directors": [
        _microdata_list('a[rel="v:directedBy"]'),
        _ld_list("director"),
        _label_text("导演"),
    ],
    "writers": [_label_text("编剧"), _ld_list("author")],
    "cast": [
        _microdata_list('a[rel="v:starring"]'),
        _ld_list("actor"),
        _label_text("主演"),
    ],
    "genres": [
        _microdata_list('span[property="v:genre"]'),
        _ld_list("genre"),
        _label_text("类型"),
    ],
    "countries": [
        _label_text("制片国家/地区"),
        _info_regex(r"制片国家/地区\s*[:：]\s*([^\n]+)"),
    ],
    "languages": [_label_text("语言"), _info_regex(r"语言\s*[:：]\s*([^\n]+)")],
    "release_date": [
        _release_microdata,
        _label_text("上映日期"),
        _label_text("首播"),
        _release_any_date,
    ],
    "duration": [
        _runtime_microdata,
        _runtime_label_html,
        _label_text("片长"),
        _runtime_minutes,
        _runtime_minutes_seconds,
    ],
    "episodes": [_label_text("集数")],
    "episode_duration": [_label_text("单集片长")],
    "imdb_id": [_label_text("IMDb")],
}


def classify_kind(genres: Optional[str], episodes: Optional[str], episode_duration: Optional[str]) -> ContentKind:
    """Movie-site items are documentary, tv or movie, checked in that order."""
    genre_text = (genres or "").lower()
    if any(word in genre_text for word in DOCUMENTARY_KEYWORDS):
        return ContentKind.DOCUMENTARY
    if episodes or episode_duration:
        return ContentKind.TV
    if any(word in genre_text for word in TV_KEYWORDS):
        return ContentKind.TV
    return ContentKind.MOVIE


def _to_float(value: Optional[str]) -> Optional[float]:
    if value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


# ── Entry point ──────────────────────────────────────────────────────────────


def parse(document: str, hint: Optional[ItemHint] = None, url: str = "") -> CanonicalRecord:
    """
    Parse one subject page.

    Args:
        document: Page HTML.
        hint: What the list page knew about the item (id, status, rating...).
        url: Page URL, for error reporting only.

    Returns:
        A CanonicalRecord with every attribute the page yielded.

    Raises:
        ParseIncomplete: If no subject id can be resolved.
    """
    hint = hint or ItemHint()
    page = DetailPage(document)

    external_id = first_of(page, ID_STRATEGIES) or hint.subject_id
    if not external_id:
        logger.warning(
            "Subject id not found on page",
            extra={"event": "parse_incomplete", "url": url},
        )
        raise ParseIncomplete(url, "subject id not found")

    values = {
        "external_id": external_id,
        "title": first_of(page, TITLE_STRATEGIES) or hint.title,
        "douban_rating": _to_float(first_of(page, RATING_STRATEGIES)),
        "summary": first_of(page, SUMMARY_STRATEGIES),
        "cover_image": first_of(page, COVER_STRATEGIES),
        "my_status": _my_status(page) or hint.status,
        "my_rating": _to_float(first_of(page, [_my_rating_input, _my_rating_stars]))
        or (float(hint.rating) if hint.rating else None),
        "my_tags": _my_tags(page) or hint.tags,
        "my_comment": _my_comment(page) or hint.comment,
        "mark_date": _my_mark_date(page) or hint.mark_date,
    }

    if hint.category == Category.BOOKS:
        values["kind"] = ContentKind.BOOK
        for attribute, strategies in BOOK_STRATEGIES.items():
            values[attribute] = first_of(page, strategies)
    else:
        for attribute, strategies in MOVIE_STRATEGIES.items():
            values[attribute] = first_of(page, strategies)
        values["kind"] = classify_kind(
            values.get("genres"), values.get("episodes"), values.get("episode_duration"),
        )

    record = CanonicalRecord(**{k: v for k, v in values.items() if v is not None})

    logger.info(
        "Page parsed",
        extra={
            "event": "parse_complete",
            "url": url,
            "external_id": record.external_id,
            "kind": record.kind.value,
            "fields": len(record.model_dump(exclude_none=True)),
        },
    )
    return record
