"""
Free-text role split parsing ("Column I").

Legacy rosters recorded role splits as hand-typed text such as

    Johnson & Associates (Partner 60%), Agent: Tom Brown 25%, Company: 15%

The text is tokenized once and then matched against a small grammar:

    keyword pass:  KEYWORD ":" NAME* "("? PCT ")"?
                   NAME+ "("? KEYWORD PCT ")"?
                   NAME* KEYWORD "("? PCT ")"?
    legacy pass:   NAME+ [":" | "-"] PCT        (role inferred from the name)
    fallback:      Capitalized Name sequences   (100% split equally)

Extracted percentages that do not total 100 are rescaled proportionally
instead of rejected; the source text is informal and reviewers need to see
a complete split.
"""
from __future__ import annotations

import re
from typing import Dict, List, NamedTuple, Optional, Tuple

from .models import RoleSplit, RoleType

# keyword pattern -> role; earlier rules win
KEYWORD_RULES: List[Tuple[str, RoleType]] = [
    (r"sales\s*manager", RoleType.SALES_MANAGER),
    (r"manager", RoleType.SALES_MANAGER),
    (r"mgr", RoleType.SALES_MANAGER),
    (r"agent", RoleType.AGENT),
    (r"agt", RoleType.AGENT),
    (r"rep", RoleType.AGENT),
    (r"partner", RoleType.PARTNER),
    (r"prtnr", RoleType.PARTNER),
    (r"company", RoleType.COMPANY),
    (r"comp", RoleType.COMPANY),
    (r"association", RoleType.ASSOCIATION),
    (r"assoc", RoleType.ASSOCIATION),
]

ROLE_TITLES: Dict[RoleType, str] = {
    RoleType.AGENT: "Agent",
    RoleType.PARTNER: "Partner",
    RoleType.SALES_MANAGER: "Sales Manager",
    RoleType.COMPANY: "Company",
    RoleType.ASSOCIATION: "Association",
}

_KEYWORDS = "|".join(p for p, _ in KEYWORD_RULES)

TOKEN_RE = re.compile(
    rf"""
    (?P<PCT>\d+(?:\.\d+)?\s*%)
    |(?P<KEYWORD>\b(?:{_KEYWORDS})\b)
    |(?P<COLON>:)
    |(?P<LPAREN>\()
    |(?P<RPAREN>\))
    |(?P<SEP>[,;|/\n])
    |(?P<DASH>-)
    |(?P<SPACE>\s+)
    |(?P<WORD>[^\s,;|/:()%\-]+)
    """,
    re.IGNORECASE | re.VERBOSE,
)

_COMPANY_HINT = re.compile(r"\b(?:company|corp|corporation|llc|inc|ltd|group)\b", re.I)
_ASSOCIATION_HINT = re.compile(r"\b(?:association|assoc|alliance|network)\b", re.I)
_MANAGER_HINT = re.compile(r"\b(?:manager|mgr)\b", re.I)
_PARTNER_HINT = re.compile(r"\bpartner\b", re.I)

_STOP_WORDS = re.compile(
    r"\b(?:percentage|percent|commission|split|role|assignment|agent|partner|manager|company|association)\b",
    re.I,
)
_CAPITALIZED_NAME = re.compile(r"\b([A-Z][a-z]+(?:\s+[A-Z][a-z]+){1,3})\b")


class Token(NamedTuple):
    kind: str
    text: str


def tokenize(text: str) -> List[Token]:
    """Tokens of `text`, without whitespace."""
    tokens = []
    for m in TOKEN_RE.finditer(text or ""):
        kind = m.lastgroup
        if kind == "SPACE":
            continue
        tokens.append(Token(kind, m.group(kind)))
    return tokens


def role_for_keyword(word: str) -> Optional[RoleType]:
    for pattern, role in KEYWORD_RULES:
        if re.fullmatch(pattern, word.strip(), re.I):
            return role
    return None


def infer_role(name: str, context: str = "") -> RoleType:
    """Role for a name found without an explicit keyword."""
    if _COMPANY_HINT.search(name):
        return RoleType.COMPANY
    if _ASSOCIATION_HINT.search(name):
        return RoleType.ASSOCIATION
    if _MANAGER_HINT.search(context):
        return RoleType.SALES_MANAGER
    if _PARTNER_HINT.search(context):
        return RoleType.PARTNER
    return RoleType.AGENT


def _pct(token: Token) -> float:
    return float(token.text.rstrip("%").strip())


def _join(tokens: List[Token]) -> str:
    return " ".join(t.text for t in tokens).strip()


# =============================================================================
# Passes
# =============================================================================

def _paren_pct(tokens: List[Token], j: int) -> Optional[int]:
    """Index of the PCT at tokens[j], or just inside a "(" there."""
    if j < len(tokens) and tokens[j].kind == "LPAREN":
        j += 1
        return j if j < len(tokens) and tokens[j].kind == "PCT" else None
    return j if j < len(tokens) and tokens[j].kind == "PCT" else None


def _after_pct(tokens: List[Token], j: int, k: int) -> int:
    i = k + 1
    if k > j and i < len(tokens) and tokens[i].kind == "RPAREN":
        i += 1
    return i


def _keyword_pass(tokens: List[Token]) -> List[RoleSplit]:
    found: List[RoleSplit] = []
    i, n = 0, len(tokens)
    while i < n:
        tok = tokens[i]

        # KEYWORD ":" NAME* "("? PCT ")"?
        if tok.kind == "KEYWORD" and i + 1 < n and tokens[i + 1].kind == "COLON":
            j = i + 2
            name_tokens = []
            while j < n and tokens[j].kind in ("WORD", "KEYWORD", "DASH"):
                if tokens[j].kind != "DASH":
                    name_tokens.append(tokens[j])
                j += 1
            k = _paren_pct(tokens, j)
            if k is not None:
                role = role_for_keyword(tok.text)
                found.append(RoleSplit(role, _join(name_tokens) or ROLE_TITLES[role], _pct(tokens[k])))
                i = _after_pct(tokens, j, k)
                continue

        # NAME+ "("? KEYWORD PCT ")"?
        if tok.kind in ("WORD", "KEYWORD"):
            j = i
            while j < n and tokens[j].kind in ("WORD", "KEYWORD"):
                j += 1
            run = tokens[i:j]
            if (
                j + 2 < n
                and tokens[j].kind == "LPAREN"
                and tokens[j + 1].kind == "KEYWORD"
                and tokens[j + 2].kind == "PCT"
            ):
                found.append(RoleSplit(role_for_keyword(tokens[j + 1].text), _join(run), _pct(tokens[j + 2])))
                i = j + 3
                if i < n and tokens[i].kind == "RPAREN":
                    i += 1
                continue
            # NAME* KEYWORD "("? PCT ")"?; a bare keyword needs the parentheses
            k = _paren_pct(tokens, j) if run[-1].kind == "KEYWORD" else None
            if k is not None and (len(run) >= 2 or k > j):
                role = role_for_keyword(run[-1].text)
                found.append(RoleSplit(role, _join(run[:-1]) or ROLE_TITLES[role], _pct(tokens[k])))
                i = _after_pct(tokens, j, k)
                continue
            # a keyword inside the run may still open a "KEYWORD:" match
            i += 1
            continue

        i += 1
    return found


_PERSONAL_ROLES = (RoleType.AGENT, RoleType.PARTNER, RoleType.SALES_MANAGER)


def _segment_text(tokens: List[Token], start: int, end: int) -> str:
    """Text of the separator-delimited segment around tokens[start:end]."""
    lo = start
    while lo > 0 and tokens[lo - 1].kind != "SEP":
        lo -= 1
    hi = end
    while hi < len(tokens) and tokens[hi].kind != "SEP":
        hi += 1
    return _join(tokens[lo:hi])


def _legacy_pass(tokens: List[Token]) -> List[RoleSplit]:
    found: List[RoleSplit] = []
    i, n = 0, len(tokens)
    while i < n:
        if tokens[i].kind not in ("WORD", "KEYWORD"):
            i += 1
            continue
        j = i
        while j < n and tokens[j].kind in ("WORD", "KEYWORD"):
            j += 1
        k = j
        if k < n and tokens[k].kind in ("COLON", "DASH"):
            k += 1
        if k >= n or tokens[k].kind != "PCT":
            i = j
            continue

        run = tokens[i:j]
        context = _segment_text(tokens, i, k + 1)
        # leading/trailing agent, partner or manager words are role hints, not name
        hint = ""
        while len(run) > 1 and run[0].kind == "KEYWORD" and role_for_keyword(run[0].text) in _PERSONAL_ROLES:
            hint += " " + run[0].text
            run = run[1:]
        while len(run) > 1 and run[-1].kind == "KEYWORD" and role_for_keyword(run[-1].text) in _PERSONAL_ROLES:
            hint += " " + run[-1].text
            run = run[:-1]
        name = _join(run)
        if re.search(r"[A-Za-z]", name):
            found.append(RoleSplit(infer_role(name, context + hint), name, _pct(tokens[k])))
        i = k + 1
    return found


def _clean(splits: List[RoleSplit]) -> List[RoleSplit]:
    """Drop out-of-range percentages and repeated (role, name) pairs."""
    seen = set()
    out = []
    for s in splits:
        if not 0 < s.percentage <= 100:
            continue
        key = (s.role_type, s.user_name.lower())
        if key in seen:
            continue
        seen.add(key)
        out.append(s)
    return out


# =============================================================================
# Totals policy
# =============================================================================

def rescale(splits: List[RoleSplit]) -> List[RoleSplit]:
    """
    Scale percentages so they total exactly 100.00. Values are rounded to
    cents and the rounding remainder goes to the largest share.
    """
    total = sum(s.percentage for s in splits)
    if not splits or total <= 0:
        return list(splits)
    if abs(total - 100.0) < 1e-9:
        return [RoleSplit(s.role_type, s.user_name, round(s.percentage, 2)) for s in splits]

    scaled = [RoleSplit(s.role_type, s.user_name, round(s.percentage * 100.0 / total, 2)) for s in splits]
    remainder = round(100.0 - sum(s.percentage for s in scaled), 2)
    if remainder:
        largest = max(range(len(scaled)), key=lambda idx: scaled[idx].percentage)
        scaled[largest].percentage = round(scaled[largest].percentage + remainder, 2)
    return scaled


def equal_split(names: List[str]) -> List[RoleSplit]:
    """100% split evenly; the first name absorbs the rounding remainder."""
    if not names:
        return []
    share = int(10000 / len(names)) / 100.0
    splits = [RoleSplit(infer_role(name), name, share) for name in names]
    splits[0].percentage = round(100.0 - share * (len(names) - 1), 2)
    return splits


def _fallback_names(text: str) -> List[str]:
    stripped = _STOP_WORDS.sub(" ", text or "")
    names: List[str] = []
    for m in _CAPITALIZED_NAME.finditer(stripped):
        name = re.sub(r"\s+", " ", m.group(1))
        if name.lower() not in (x.lower() for x in names):
            names.append(name)
    return names


# =============================================================================
# Public API
# =============================================================================

def parse_keyword(text: str) -> List[RoleSplit]:
    """Keyword pass only, rescaled."""
    return rescale(_clean(_keyword_pass(tokenize(text))))


def parse_legacy(text: str) -> List[RoleSplit]:
    """Keyword-free pass used by the bulk parser, with the equal-split fallback."""
    tokens = tokenize(text)
    splits = _clean(_legacy_pass(tokens))
    if splits:
        return rescale(splits)
    if not any(t.kind == "PCT" for t in tokens):
        return equal_split(_fallback_names(text))
    return []


def parse_column_i(text: str) -> List[RoleSplit]:
    """
    Best-effort parse of one annotation: keyword shapes first, then the
    legacy name-percentage shape, then bare names. May return [].
    """
    tokens = tokenize(text)
    splits = _clean(_keyword_pass(tokens))
    if splits:
        return rescale(splits)
    return parse_legacy(text)
