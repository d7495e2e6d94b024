import json
import re
from typing import Any, List, Optional


def safe_trunc(text: Any, limit: int) -> str:
    s = str(text or "")
    if len(s) <= limit:
        return s
    return s[:limit] + "...(truncated)"


def strip_llm_reasoning_sections(text: str) -> str:
    s = str(text or "")
    if not s:
        return ""
    s = re.sub(r"(?is)<(think|analysis|reasoning)[^>]*>.*?</\1>", " ", s)
    s = re.sub(r"(?is)</?(think|analysis|reasoning)[^>]*>", " ", s)
    s = re.sub(r"(?is)```(?:think|thinking|analysis|reasoning)[^\n]*\n.*?```", " ", s)
    return s.strip()


def find_code_blocks(text: str) -> List[str]:
    s = str(text or "")
    if not s:
        return []
    out: List[str] = []
    seen: set = set()
    patterns = (
        r"```(?:javascript|js|typescript|ts)\s*(.*?)\s*```",
        r"```[a-zA-Z0-9_-]*\s*(.*?)\s*```",
    )
    for pat in patterns:
        for m in re.finditer(pat, s, re.S | re.I):
            code = str(m.group(1) or "").strip()
            if not code or code in seen:
                continue
            seen.add(code)
            out.append(code)
    return out


def _balanced_objects(s: str) -> List[str]:
    out: List[str] = []
    start = s.find("{")
    while start != -1:
        depth = 0
        in_str = False
        escaped = False
        end = -1
        for i in range(start, len(s)):
            ch = s[i]
            if in_str:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_str = False
                continue
            if ch == '"':
                in_str = True
                continue
            if ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    end = i
                    break
        if end == -1:
            start = s.find("{", start + 1)
            continue
        out.append(s[start : end + 1])
        start = s.find("{", end + 1)
    return out


def extract_json_candidates(text: str) -> List[str]:
    s = (text or "").strip()
    if not s:
        return []
    out: List[str] = []
    fence = re.search(r"```(?:json)?\s*(.*?)\s*```", s, re.S | re.I)
    if fence:
        fenced = (fence.group(1) or "").strip()
        if fenced.startswith("{") and fenced.endswith("}"):
            out.append(fenced)
    if s.startswith("{") and s.endswith("}") and s not in out:
        out.append(s)
    for cand in _balanced_objects(s):
        if cand not in out:
            out.append(cand)
    return out


def parse_json_dict_from_llm(text: str) -> dict:
    s = (text or "").strip()
    if not s:
        raise ValueError("LLM did not return JSON")
    candidates: List[str] = []
    cleaned = strip_llm_reasoning_sections(s)
    for source in (cleaned, s):
        for cand in extract_json_candidates(source):
            if cand not in candidates:
                candidates.append(cand)
    if not candidates:
        candidates = [cleaned or s]
    last_err: Optional[Exception] = None
    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except ValueError as exc:
            last_err = exc
            continue
        if isinstance(parsed, dict):
            return parsed
    if last_err is not None:
        raise ValueError(f"LLM JSON parse failed: {last_err}")
    raise ValueError("LLM JSON root must be an object")
