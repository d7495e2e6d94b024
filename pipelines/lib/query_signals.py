import re
from typing import Optional


CLIENT_SHEET_CUE_RE = re.compile(r"client|priority|group", re.I)
WORKER_SHEET_CUE_RE = re.compile(r"worker|skill|qualification", re.I)
TASK_SHEET_CUE_RE = re.compile(r"task|duration|phase|category", re.I)

SHEET_CUES = (
    ("clients", CLIENT_SHEET_CUE_RE),
    ("workers", WORKER_SHEET_CUE_RE),
    ("tasks", TASK_SHEET_CUE_RE),
)
DEFAULT_SHEET = "tasks"

NAME_STARTS_WITH_RE = re.compile(
    r"\bname\s+(?:starts|begins)\s+with\s+(?:the\s+letter\s+)?['\"]?(?P<value>[a-z0-9])",
    re.I,
)

NAME_CONTAINS_RE = re.compile(
    r"\bname\s+(?:contains|includes|has)\s+['\"]?(?P<value>[a-z0-9][\w-]*)",
    re.I,
)

SKILL_MENTION_RE = re.compile(
    r"\bwith\s+['\"]?(?P<value>[a-z0-9][\w.+#-]*)['\"]?\s+skills?\b",
    re.I,
)

DURATION_OVER_RE = re.compile(
    r"\b(?:longer\s+than|duration\s+(?:over|above|greater\s+than|more\s+than|of\s+more\s+than))\s+"
    r"(?P<value>\d+(?:\.\d+)?)",
    re.I,
)

PREFERRED_PHASE_RE = re.compile(r"\bprefers?\s+phase\s+(?P<value>\d+)\b", re.I)


def detect_target_sheet(text: str) -> str:
    s = text or ""
    for sheet, cue in SHEET_CUES:
        if cue.search(s):
            return sheet
    return DEFAULT_SHEET


def row_handle_for(sheet: Optional[str]) -> str:
    name = str(sheet or "").strip()
    if not name:
        return "row"
    if name.endswith("s") and len(name) > 1:
        name = name[:-1]
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        return "row"
    return name
