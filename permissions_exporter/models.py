import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple


@dataclass(frozen=True)
class RemoteItem:
    id: str
    name: str
    web_url: str = ""
    is_folder: bool = False
    is_file: bool = False

    @classmethod
    def from_graph(cls, item: Dict[str, Any]) -> "RemoteItem":
        return cls(
            id=item.get("id") or "",
            name=item.get("name") or "",
            web_url=item.get("webUrl") or "",
            is_folder=isinstance(item.get("folder"), dict),
            is_file=isinstance(item.get("file"), dict),
        )


@dataclass(frozen=True)
class PermissionRecord:
    file_name: str
    web_url: str
    file_id: str
    permission_id: str
    roles: Tuple[str, ...] = ()
    granted_to_display_name: str = ""
    granted_to_email: str = ""
    is_inherited: bool = False
    inherited_from: str = ""

    @property
    def roles_string(self) -> str:
        return ", ".join(self.roles)


@dataclass
class BatchJob:
    """Files awaiting one `$batch` round trip, keyed by correlation token."""

    entries: List[Tuple[str, RemoteItem]] = field(default_factory=list)

    @classmethod
    def for_items(cls, items: Iterable[RemoteItem]) -> "BatchJob":
        return cls(entries=[(str(uuid.uuid4()), item) for item in items])

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[Tuple[str, RemoteItem]]:
        return iter(self.entries)

    def to_graph_body(self, drive_id: str, select: Optional[str] = None) -> Dict[str, Any]:
        query = f"?$select={select}" if select else ""
        return {
            "requests": [
                {
                    "id": token,
                    "method": "GET",
                    "url": f"/drives/{drive_id}/items/{item.id}/permissions{query}",
                }
                for token, item in self.entries
            ]
        }


@dataclass
class RetrievalResult:
    records: List[PermissionRecord] = field(default_factory=list)
    error_count: int = 0
    throttle_count: int = 0
