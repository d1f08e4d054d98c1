"""
Numbered source citations for one streamed response.
"""
from dataclasses import dataclass, field
from typing import Dict, List, Optional, TypedDict


class Citation(TypedDict, total=False):
    url: str
    title: str
    cited_text: str


@dataclass
class CitationRecord:
    url: str
    title: str
    index: int
    cited_text: Optional[str] = None


@dataclass
class CitationTracker:
    """
    Assigns stable 1-based indices to sources in first-seen order.

    A URL seen again keeps the index it got the first time.
    """
    records: Dict[str, CitationRecord] = field(default_factory=dict)

    def add(self, citation: Citation) -> CitationRecord:
        url = citation.get("url", "")
        record = self.records.get(url)
        if record is None:
            record = CitationRecord(
                url=url,
                title=citation.get("title") or url,
                index=len(self.records) + 1,
                cited_text=citation.get("cited_text"),
            )
            self.records[url] = record
        return record

    def ordered(self) -> List[CitationRecord]:
        return sorted(self.records.values(), key=lambda r: r.index)

    def __len__(self) -> int:
        return len(self.records)


def format_citation(tracker: CitationTracker, citation: Citation) -> str:
    """
    Register ``citation`` and return its inline marker, e.g. ``" [1]"``.
    """
    return f" [{tracker.add(citation).index}]"


def generate_footnotes(tracker: CitationTracker) -> str:
    """
    Render the reference list for every cited source.

    Returns:
        str: ``"\\n\\nReferences:\\n[1] Title – url"`` lines, or an empty
        string when nothing was cited.
    """
    if not tracker.records:
        return ""
    lines = [f"[{r.index}] {r.title} – {r.url}" for r in tracker.ordered()]
    return "\n\nReferences:\n" + "\n".join(lines)
