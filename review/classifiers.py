"""
Heuristic text classifiers over review output (English and Chinese).

Each is a plain ``str -> bool`` or ``str -> list`` function so the
orchestrator never depends on how the matching is done. Thresholds are
tuning knobs, not correctness guarantees.
"""

import re
from typing import List

META_SHORT_CHARS = 400
MIN_CANDIDATE_CHARS = 12

_WAITING_RE = re.compile(
    r"\b(?:waiting\s+(?:for|on)|awaiting)\b.{0,60}?\b(?:approv\w*|permission|confirmation|verification)\b|"
    r"\bpending\s+(?:approval|permission|verification)\b|"
    r"等待.{0,20}?(?:批准|授权|许可|确认|验证)",
    re.IGNORECASE,
)

_META_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"\b(?:wait(?:ing)?|await(?:ing)?)\s+(?:for\s+)?(?:your|the\s+user'?s?|user)?\s*"
        r"(?:approval|permission|confirmation|decision)",
        r"\b(?:need|needs|require|requires|requesting)\s+(?:your\s+)?(?:approval|permission)",
        r"\bonce\s+(?:you|the\s+user)\s+(?:approve|confirm|grant)",
        r"\b(?:please|kindly)\s+(?:approve|confirm|grant)",
        r"\bpending\s+(?:approval|verification|confirmation)",
        r"\bi\s+will\s+(?:now\s+)?(?:run|execute|verify)\b.*\b(?:after|once)\b",
        r"(?:等待|需要)(?:您的?|用户的?)?(?:批准|授权|确认|许可)",
        r"(?:请|麻烦)(?:您)?(?:批准|授权|确认)",
        r"(?:批准|授权|确认)后(?:我|将|再)",
    )
]

_BUG_VOCAB_RE = re.compile(
    r"\bbugs?\b|\berrors?\b|\bcrash|\bexceptions?\b|\bfail(?:s|ed|ure|ing)?\b|\bbroken\b|"
    r"\bincorrect(?:ly)?\b|\bwrong\b|\bvulnerab|\binjection\b|\bleaks?\b|\boverflow|"
    r"\brace\s+condition|\bnull\s+(?:pointer|dereference)|\bundefined\b|\bregression|"
    r"\bsyntaxerror\b|\btypeerror\b|\boff[-\s]by[-\s]one\b|\bdeadlock|"
    r"错误|缺陷|漏洞|崩溃|异常|失败|报错|泄漏|泄露|越界|溢出|死锁|空指针",
    re.IGNORECASE,
)

_NEGATION_RE = re.compile(
    r"\bno\s+(?:obvious\s+|critical\s+|major\s+|new\s+)?(?:bugs?|errors?|issues?|problems?|vulnerabilit\w*)"
    r"(?:\s+(?:were|was|have\s+been|has\s+been))?\s*(?:found|detected|identified|introduced)?|"
    r"\bdid\s+not\s+(?:find|detect|identify)\s+any\b[^.\n]*|"
    r"未(?:发现|检测到|找到)(?:任何|明显的?)?(?:问题|错误|缺陷|漏洞|bug)|"
    r"没有(?:发现)?(?:任何|明显的?)?(?:问题|错误|缺陷|漏洞|bug)",
    re.IGNORECASE,
)

_NARRATIVE_RE = re.compile(
    r"\b(?:found|identified|discovered|detected)\s+(?:a|an|one|two|three|several|multiple|\d+)\b[^.\n]*"
    r"\b(?:bugs?|issues?|problems?|vulnerabilit\w*|errors?)|"
    r"\bthere\s+(?:is|are)\s+(?:a|an|several|multiple|\d+)\s+(?:\w+\s+)?(?:bugs?|issues?|vulnerabilit\w*)|"
    r"\bwill\s+(?:crash|fail|throw|raise|break)|"
    r"发现(?:了)?(?:\d+|一|两|几|多)?(?:个|处)?[^。\n]*(?:问题|错误|缺陷|漏洞|bug)|"
    r"(?:会|将|可能)(?:导致|引发)[^。\n]*(?:崩溃|异常|错误|失败)",
    re.IGNORECASE,
)

_BULLET_RE = re.compile(r"^\s*(?:[-*+•·]|\d+[.)、]|[（(]\d+[)）])\s+(.*\S)\s*$")
_HEADING_RE = re.compile(r"^\s*#{1,6}\s")
_SENTENCE_SPLIT_RE = re.compile(r"[;；。\n]+")
_CLAUSE_SPLIT_RE = re.compile(r"[,，]+")
_MARKDOWN_NOISE_RE = re.compile(r"\*\*|__|`")


def _strip_negations(text: str) -> str:
    return _NEGATION_RE.sub(" ", text or "")


def has_bug_vocabulary(text: str) -> bool:
    """True when the text talks about defects (negated mentions like "no bugs found" don't count)."""
    return _BUG_VOCAB_RE.search(_strip_negations(text)) is not None


def is_meta_summary(text: str) -> bool:
    """True for text that describes waiting for approval instead of concluding a review.

    Short text only needs to say it is waiting on approval or verification;
    longer text must match one of the waiting-for-permission patterns.
    """
    stripped = (text or "").strip()
    if not stripped:
        return True
    if len(stripped) < META_SHORT_CHARS and _WAITING_RE.search(stripped):
        return True
    return any(p.search(stripped) for p in _META_PATTERNS)


def looks_like_bug_narrative(text: str) -> bool:
    """Prose that reports bugs (as opposed to merely using the word "error")."""
    cleaned = _strip_negations(text)
    if _NARRATIVE_RE.search(cleaned):
        return True
    return len(_BUG_VOCAB_RE.findall(cleaned)) >= 3


def _clean(fragment: str) -> str:
    return _MARKDOWN_NOISE_RE.sub("", fragment).strip(" \t-*:：")


def _keep(fragment: str) -> bool:
    return len(fragment) >= MIN_CANDIDATE_CHARS and has_bug_vocabulary(fragment)


def extract_bug_candidates(text: str, max_candidates: int = 5) -> List[str]:
    """Candidate bug statements: bullet items first, else sentence or clause fragments."""
    candidates: List[str] = []

    def add(fragment: str) -> None:
        value = _clean(fragment)
        if _keep(value) and value not in candidates:
            candidates.append(value)

    for line in (text or "").splitlines():
        if _HEADING_RE.match(line):
            continue
        match = _BULLET_RE.match(line)
        if match:
            add(match.group(1))

    if not candidates:
        sentences = [s for s in _SENTENCE_SPLIT_RE.split(text or "") if s.strip()]
        if len(sentences) <= 1:
            sentences = [c for c in _CLAUSE_SPLIT_RE.split(text or "") if c.strip()]
        for sentence in sentences:
            if not _HEADING_RE.match(sentence):
                add(sentence)

    return candidates[:max(0, max_candidates)]
