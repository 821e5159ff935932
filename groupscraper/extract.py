from __future__ import annotations

import csv
import io
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Sequence

from bs4 import BeautifulSoup


FINGERPRINT_CHARS: int = 200
MIN_PHONE_DIGITS: int = 8
MAX_PHONE_DIGITS: int = 15
UNKNOWN_AUTHOR: str = "Unknown"
CSV_HEADER: tuple[str, str] = ("postUser", "postPhones")

# Candidate author elements, most specific first
AUTHOR_SELECTORS: tuple[str, ...] = (
    'h3 a[role="link"] span',
    "strong a",
    'a[role="link"] strong span',
    'a[aria-hidden="false"] span[dir="auto"]',
    'div[dir="auto"] strong span',
    'span[class*="x1hl2dhg"]',
    'span[class*="xdj266r"]',
    'span[dir="auto"] strong',
    'a[role="link"] > span[dir="auto"]',
)

_PHONE_RE = re.compile(r"\+?\d[\d\s().\-–—]{7,}\d")
_NON_PHONE_CHARS_RE = re.compile(r"[^\d+]")
_AUTHOR_NOISE_RE = re.compile(r"\s*\(admin\)|Group|Page", re.IGNORECASE)
_RELATIVE_TIME_RE = re.compile(r"\b(h|d|m|·)\b", re.IGNORECASE)

# Markers of a logged-out or challenged session
_LOGIN_URL_MARKERS = ("login", "checkpoint")
_LOGIN_FORM_SELECTORS = ("input[name='email']", "button[name='login']")


@dataclass
class ResultRow:
    author: str
    phones: str


# -----------------------------
# Value extraction
# -----------------------------

def extract_phones(text: str) -> List[str]:
    """
    Phone-number-like values in `text`, normalized to digits with an optional
    leading '+', deduplicated in order of appearance.
    """
    out: List[str] = []
    seen: set[str] = set()
    for m in _PHONE_RE.finditer(text or ""):
        value = _NON_PHONE_CHARS_RE.sub("", m.group(0))
        digits = value.lstrip("+")
        if not (MIN_PHONE_DIGITS <= len(digits) <= MAX_PHONE_DIGITS):
            continue
        if value in seen:
            continue
        seen.add(value)
        out.append(value)
    return out


def fingerprint(text: str, size: int = FINGERPRINT_CHARS) -> str:
    return (text or "")[:size]


# -----------------------------
# Author label heuristic
# -----------------------------

def clean_author(label: str) -> str:
    return _AUTHOR_NOISE_RE.sub("", label or "").strip() or UNKNOWN_AUTHOR


def _author_from_markup(html: str) -> str:
    if not html:
        return ""
    soup = BeautifulSoup(html, "lxml")
    for sel in AUTHOR_SELECTORS:
        el = soup.select_one(sel)
        if el is None:
            continue
        raw = el.get_text()
        label = raw.strip()
        if len(label) > 2 and len(raw) < 50:
            return label
    return ""


def _author_from_text(text: str) -> str:
    for line in (text or "").split("\n"):
        if len(line) >= 80 or not _RELATIVE_TIME_RE.search(line):
            continue
        head = line.split("·")[0].strip()
        if len(head) > 2:
            return head
        # only the first matching line is considered
        return ""
    return ""


def pick_author(html: str, text: str) -> str:
    """
    Best guess at a post's author: the first short, non-empty candidate element,
    else the name in front of the relative timestamp line, else "Unknown".
    """
    label = _author_from_markup(html) or _author_from_text(text)
    return clean_author(label)


# -----------------------------
# Session checks
# -----------------------------

def looks_logged_out(url: str, html: Optional[str]) -> bool:
    u = (url or "").lower()
    if any(m in u for m in _LOGIN_URL_MARKERS):
        return True
    if not html:
        return False
    soup = BeautifulSoup(html, "lxml")
    return any(soup.select_one(sel) is not None for sel in _LOGIN_FORM_SELECTORS)


# -----------------------------
# Artifact
# -----------------------------

def build_csv(rows: Iterable[ResultRow]) -> bytes:
    buf = io.StringIO()
    buf.write(",".join(CSV_HEADER) + "\n")
    writer = csv.writer(buf, quoting=csv.QUOTE_ALL, lineterminator="\n")
    for r in rows:
        writer.writerow([r.author, r.phones])
    return buf.getvalue().encode("utf-8")


def artifact_filename(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    stamp = now.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"
    return "facebook_group_" + re.sub(r"[:.]", "-", stamp) + ".csv"


def join_phones(values: Sequence[str]) -> str:
    return ", ".join(values)
