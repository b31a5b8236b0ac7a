"""Depth-first enumeration of every file below a drive container.

The walk keeps an explicit stack of child iterators instead of recursing, so
arbitrarily deep libraries cannot exhaust the interpreter stack. Visiting order
is the same as a recursive walk: a folder's subtree is finished before the
next sibling is looked at.
"""

from typing import Any, Dict, Iterator, List

from permissions_exporter.models import RemoteItem
from permissions_exporter.runtime_logger import emit


ROOT_ITEM_ID = "root"


def _list_children(client, drive_id: str, item_id: str) -> List[RemoteItem]:
    # All pages are drained before any child is classified.
    try:
        children: List[Dict[str, Any]] = client.list_children(drive_id, item_id)
    except Exception as exc:
        emit("WARN", "WALKER", f"Folder listing failed, skipping subtree: item_id={item_id} error={exc}")
        return []
    return [RemoteItem.from_graph(child) for child in children or []]


def walk_files(client, drive_id: str, root_item_id: str = ROOT_ITEM_ID) -> List[RemoteItem]:
    emit("INFO", "WALKER", f"Starting recursive file retrieval: drive_id={drive_id} root={root_item_id}")
    files: List[RemoteItem] = []
    folders_visited = 1
    stack: List[Iterator[RemoteItem]] = [iter(_list_children(client, drive_id, root_item_id))]

    while stack:
        child = next(stack[-1], None)
        if child is None:
            stack.pop()
            continue
        if child.is_folder and child.id:
            folders_visited += 1
            stack.append(iter(_list_children(client, drive_id, child.id)))
        elif child.is_file:
            files.append(child)

    emit("INFO", "WALKER", f"Total files found: files={len(files)} folders={folders_visited}")
    return files
