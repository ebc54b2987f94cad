from typing import Any, Dict, List, Sequence

NOTES_PER_PAGE = 30

def matches(note: Dict[str, Any], query: str) -> bool:
    """Case-insensitive substring match on title, subject or any tag."""
    needle = query.strip().lower()
    if not needle:
        return True
    if needle in (note.get("title") or "").lower():
        return True
    if needle in (note.get("subject") or "").lower():
        return True
    return any(needle in tag.lower() for tag in note.get("tags") or [])

def filter_notes(notes: Sequence[Dict[str, Any]], query: str) -> List[Dict[str, Any]]:
    return [note for note in notes if matches(note, query)]

class NoteBrowser:
    """Search box plus "load more" paging over an already fetched note list."""

    def __init__(self, notes: Sequence[Dict[str, Any]], page_size: int = NOTES_PER_PAGE):
        self.notes = list(notes)
        self.page_size = page_size
        self.query = ""
        self.display_count = page_size

    def search(self, query: str) -> List[Dict[str, Any]]:
        self.query = query
        return self.displayed

    @property
    def filtered(self) -> List[Dict[str, Any]]:
        return filter_notes(self.notes, self.query)

    @property
    def displayed(self) -> List[Dict[str, Any]]:
        return self.filtered[:self.display_count]

    @property
    def has_more(self) -> bool:
        return self.display_count < len(self.filtered)

    def load_more(self) -> List[Dict[str, Any]]:
        self.display_count += self.page_size
        return self.displayed

    def record_download(self, updated: Dict[str, Any]) -> None:
        """Replace a note with the copy returned by the download endpoint."""
        self.notes = [updated if n["id"] == updated["id"] else n for n in self.notes]
