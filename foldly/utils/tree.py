import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Literal, Optional, Union

from foldly.utils.dates import as_utc


@dataclass
class FileNode:
    id: uuid.UUID
    name: str
    size: int
    mime_type: str
    folder_id: Optional[uuid.UUID]
    uploaded_at: Any = None
    kind: Literal["file"] = "file"


@dataclass
class FolderNode:
    id: uuid.UUID
    name: str
    path: str
    depth: int
    parent_id: Optional[uuid.UUID]
    link_id: Optional[uuid.UUID] = None
    file_count: int = 0
    total_size: int = 0
    children: List["TreeNode"] = field(default_factory=list)
    kind: Literal["folder"] = "folder"


TreeNode = Union[FolderNode, FileNode]


def build_tree(folders: Iterable[Any], files: Iterable[Any]) -> List[TreeNode]:
    """Nest folder and file rows. Rows whose parent is missing land at the root."""
    nodes: Dict[uuid.UUID, FolderNode] = {}
    for f in sorted(folders, key=lambda f: (f.depth, f.name.lower())):
        nodes[f.id] = FolderNode(
            id=f.id,
            name=f.name,
            path=f.path,
            depth=f.depth,
            parent_id=f.parent_folder_id,
            link_id=f.link_id,
            file_count=f.file_count,
            total_size=f.total_size,
        )

    roots: List[TreeNode] = []
    for node in nodes.values():
        parent = nodes.get(node.parent_id) if node.parent_id else None
        (parent.children if parent else roots).append(node)

    for f in sorted(files, key=lambda f: f.file_name.lower()):
        leaf = FileNode(
            id=f.id,
            name=f.file_name,
            size=f.file_size,
            mime_type=f.mime_type,
            folder_id=f.folder_id,
            uploaded_at=as_utc(f.uploaded_at),
        )
        parent = nodes.get(f.folder_id) if f.folder_id else None
        (parent.children if parent else roots).append(leaf)

    return roots


def node_to_dict(node: TreeNode) -> Dict[str, Any]:
    match node:
        case FolderNode():
            return {
                "kind": node.kind,
                "id": str(node.id),
                "name": node.name,
                "path": node.path,
                "depth": node.depth,
                "parentId": str(node.parent_id) if node.parent_id else None,
                "linkId": str(node.link_id) if node.link_id else None,
                "fileCount": node.file_count,
                "totalSize": node.total_size,
                "children": [node_to_dict(child) for child in node.children],
            }
        case FileNode():
            return {
                "kind": node.kind,
                "id": str(node.id),
                "name": node.name,
                "size": node.size,
                "mimeType": node.mime_type,
                "folderId": str(node.folder_id) if node.folder_id else None,
                "uploadedAt": node.uploaded_at.isoformat() if node.uploaded_at else None,
            }
        case _:
            raise TypeError(f"Unknown tree node: {node!r}")
