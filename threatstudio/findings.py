"""Turn free-text model output into structured findings.

Structured JSON (fenced or raw) is tried first. If the response is prose,
it is split into markdown-ish sections and each section is mined for a
title, severity, category, CWE id, confidence and mitigations.
"""
import json
import re
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from threatstudio.models import Finding

STRIDE_KEYS = [
    "spoofing",
    "tampering",
    "repudiation",
    "information_disclosure",
    "denial_of_service",
    "elevation_of_privilege",
]
STRIDE_CATEGORIES = [
    "Spoofing",
    "Tampering",
    "Repudiation",
    "Information Disclosure",
    "Denial of Service",
    "Elevation of Privilege",
]

MIN_SECTION_LENGTH = 50
MAX_DESCRIPTION_LENGTH = 500


def _finding_id(index: int) -> str:
    return f"finding_{uuid.uuid4().hex[:12]}_{index}"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _normalize_severity(raw: Any) -> str:
    level = str(raw or "").strip().lower()
    if level in ("critical", "high"):
        return "high"
    if level in ("minimal", "low", "informational"):
        return "low"
    return "medium"


def _as_list(value: Any) -> Optional[List[str]]:
    if value is None:
        return None
    if isinstance(value, list):
        return [str(v) for v in value]
    return [str(value)]


def _as_confidence(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(str(value).rstrip("%"))
    except ValueError:
        return None


# ------------------------------------------------------------------
# Structured (JSON) responses
# ------------------------------------------------------------------

def _normalize_finding(raw: Dict[str, Any], category: Optional[str] = None) -> Dict[str, Any]:
    mitigations = None
    for key in ("recommended_mitigations", "mitigation", "recommendation", "mitigations"):
        if raw.get(key):
            mitigations = _as_list(raw[key])
            break

    description = raw.get("attack_scenario") or raw.get("description") or ""
    components = raw.get("affected_components")
    if isinstance(components, list) and components:
        description += f"\n\nAffected Components: {', '.join(str(c) for c in components)}"

    if category:
        category = category.upper().replace("_", " ")
    else:
        category = raw.get("category") or "General"

    cwe = raw.get("cwe_id") or raw.get("cweId")
    return {
        "title": raw.get("vulnerability") or raw.get("threat") or raw.get("title") or "Untitled Finding",
        "description": description or "No description provided",
        "severity": _normalize_severity(raw.get("severity")),
        "category": category,
        "cwe_id": str(cwe) if cwe is not None else None,
        "mitigations": mitigations,
        "impact": raw.get("impact"),
        "confidence": _as_confidence(raw.get("confidence")),
    }


def _process_structured(parsed: Any) -> List[Dict[str, Any]]:
    if isinstance(parsed, dict) and any(parsed.get(k) for k in STRIDE_KEYS):
        found = []
        for key in STRIDE_KEYS:
            items = parsed.get(key)
            if isinstance(items, list):
                found.extend(_normalize_finding(f, key) for f in items if isinstance(f, dict))
        return found
    if isinstance(parsed, list):
        return [_normalize_finding(f) for f in parsed if isinstance(f, dict)]
    if isinstance(parsed, dict) and isinstance(parsed.get("findings"), list):
        return [_normalize_finding(f) for f in parsed["findings"] if isinstance(f, dict)]
    return []


def _parse_structured(response: str) -> List[Dict[str, Any]]:
    candidates = []
    fenced = re.search(r"```json\s*\n?([\s\S]*?)\n?```", response)
    if fenced:
        candidates.append(fenced.group(1))
    candidates.append(response)

    for text in candidates:
        try:
            parsed = json.loads(text)
        except ValueError:
            continue
        return _process_structured(parsed)
    return []


# ------------------------------------------------------------------
# Prose responses
# ------------------------------------------------------------------

def _long_parts(parts: List[str]) -> List[str]:
    return [p for p in parts if len(p.strip()) > MIN_SECTION_LENGTH]


def _split_sections(response: str) -> List[str]:
    # ### 1. **Title** / ### 1. Title
    for pattern in (r"(?:^|\n)###\s*\d+\.\s*\*\*", r"(?:^|\n)###\s*\d+\.\s*"):
        if re.search(pattern, response):
            sections = _long_parts(re.split(pattern, response))
            if sections:
                return sections

    # Numbered items, at least three of them
    pattern = r"(?:^|\n)###?\s*\d+[.)]\s+"
    if len(re.findall(pattern, response)) > 2:
        return _long_parts(re.split(pattern, response))

    # Markdown headers, at least three of them
    pattern = r"(?:^|\n)#{2,}\s+"
    if len(re.findall(pattern, response)) > 2:
        return _long_parts(re.split(pattern, response))

    paragraphs = _long_parts(re.split(r"\n\n+", response))
    if len(paragraphs) > 1:
        return paragraphs
    return [response]


_TITLE_PATTERNS = [
    re.compile(r"\*\*(.*?)\*\*"),
    re.compile(r"^#+\s*(.+)$", re.MULTILINE),
    re.compile(r"^(?:Threat|Finding|Issue|Risk):\s*(.+)$", re.MULTILINE | re.IGNORECASE),
    re.compile(r"^(?:\d+[.)]\s*)?(.+?)(?:\n|$)"),
]

_SEVERITY_PATTERNS = [
    re.compile(r"severity[:\s*]*(high|critical|medium|moderate|low|minimal)", re.IGNORECASE),
    re.compile(r"\b(high|critical|medium|moderate|low|minimal)\s+(?:severity|risk|priority)", re.IGNORECASE),
    re.compile(r"(?:risk|threat)\s+level[:\s]*(high|critical|medium|moderate|low|minimal)", re.IGNORECASE),
]

_MITIGATION_BLOCK = re.compile(
    r"(?:mitigations?|remediation|countermeasures?|recommendations?)[:\s*]*\n"
    r"([\s\S]*?)(?=\n\n|\n(?:severity|category|cwe|confidence)|$)",
    re.IGNORECASE,
)
_MITIGATION_INLINE = re.compile(
    r"(?:mitigation|remediation|fix|solution):\s*([^\n]+)", re.IGNORECASE
)


def _extract_title(section: str) -> str:
    for pattern in _TITLE_PATTERNS:
        match = pattern.search(section)
        if match and match.group(1).strip():
            return re.sub(r"^[\d.)\-*#\s]+", "", match.group(1)).strip(" *")
    return "Security Finding"


def _extract_category(section: str, analysis_type: str) -> str:
    lowered = section.lower()
    if analysis_type == "stride":
        for category in STRIDE_CATEGORIES:
            if category.lower() in lowered:
                return category
    if analysis_type == "stpa-sec":
        if "unsafe control" in lowered:
            return "Unsafe Control Action"
        if "missing feedback" in lowered:
            return "Missing Feedback"
        if "component failure" in lowered:
            return "Component Failure"
    match = re.search(r"category[:\s*]*([^\n]+)", section, re.IGNORECASE)
    if match:
        return match.group(1).strip(" *")
    return "General"


def _extract_mitigations(section: str) -> List[str]:
    found: List[str] = []
    block = _MITIGATION_BLOCK.search(section)
    if block:
        items = re.split(r"\n[*\-+•]\s+|\n\d+[.)]\s+|\n{2,}", "\n" + block.group(1))
        found.extend(i.strip(" -*\n") for i in items if len(i.strip()) > 10)
    for match in _MITIGATION_INLINE.finditer(section):
        if len(match.group(1)) > 10:
            found.append(match.group(1).strip())
    unique = []
    for item in found:
        if item not in unique:
            unique.append(item)
    return unique


def _extract_description(section: str, title: str) -> str:
    text = section.replace(title, "", 1)
    text = re.sub(r"\*\*(.*?)\*\*", r"\1", text, count=1)
    text = re.sub(r"severity[:\s*]*(high|medium|low)", "", text, flags=re.IGNORECASE)
    text = re.sub(r"CWE[-\s]?\d+", "", text, flags=re.IGNORECASE)
    text = re.sub(r"confidence[:\s]*\d+%?", "", text, flags=re.IGNORECASE)
    text = _MITIGATION_BLOCK.sub("", text)
    text = " ".join(line.strip() for line in text.split("\n") if line.strip()).strip(" *")
    if len(text) > MAX_DESCRIPTION_LENGTH:
        text = text[:MAX_DESCRIPTION_LENGTH - 3] + "..."
    return text


def _parse_section(section: str, analysis_type: str) -> Optional[Dict[str, Any]]:
    if len(section.strip()) < 20:
        return None

    title = _extract_title(section)
    severity = "medium"
    for pattern in _SEVERITY_PATTERNS:
        match = pattern.search(section)
        if match:
            severity = _normalize_severity(match.group(1))
            break

    cwe = re.search(r"CWE[-\s]?(\d+)", section, re.IGNORECASE)
    confidence = re.search(r"confidence[:\s*]*(\d+)%?", section, re.IGNORECASE)
    description = _extract_description(section, title) or section[:MAX_DESCRIPTION_LENGTH]

    if len(title) < 3 or len(description) < 10:
        return None

    return {
        "title": title[:200],
        "description": description.strip(),
        "severity": severity,
        "category": _extract_category(section, analysis_type),
        "cwe_id": cwe.group(1) if cwe else None,
        "confidence": int(confidence.group(1)) if confidence else None,
        "mitigations": _extract_mitigations(section) or None,
    }


def extract_findings(
    response: str, analysis_type: str, model_source: str = ""
) -> List[Finding]:
    """Extract findings from a model response. May return an empty list."""
    if not response or not response.strip():
        return []

    raw = _parse_structured(response)
    if not raw:
        raw = [f for f in (_parse_section(s, analysis_type) for s in _split_sections(response)) if f]

    created_at = _now()
    return [
        Finding(id=_finding_id(i), model_source=model_source or None, created_at=created_at, **f)
        for i, f in enumerate(raw)
    ]
