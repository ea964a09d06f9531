from typing import Dict, Iterator, List, Optional, Tuple

from .state import DialogueState
from .tree import SearchNode


class TranspositionTable:
    """
    Arena of search nodes keyed by state hash.

    Nodes refer to their parent by key, so the tree is a DAG over this index
    rather than a cyclic object graph. `get_or_create` never awaits, which keeps
    first insertion atomic when simulations interleave on one event loop.
    """

    def __init__(self):
        self._nodes: Dict[str, SearchNode] = {}

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, key: str) -> bool:
        return key in self._nodes

    def __iter__(self) -> Iterator[SearchNode]:
        return iter(self._nodes.values())

    def get(self, key: str) -> Optional[SearchNode]:
        return self._nodes.get(key)

    def seed(self, state: DialogueState) -> SearchNode:
        node, _ = self.get_or_create(state)
        return node

    def get_or_create(
        self,
        state: DialogueState,
        parent: Optional[SearchNode] = None,
        action: Optional[str] = None
    ) -> Tuple[SearchNode, bool]:
        key = state.hash()
        node = self._nodes.get(key)
        if node is not None:
            return node, False

        node = SearchNode(
            state=state,
            parent_key=parent.key if parent is not None else None,
            action=action,
        )
        self._nodes[key] = node
        return node, True

    def parent_of(self, node: SearchNode) -> Optional[SearchNode]:
        if node.parent_key is None:
            return None
        return self._nodes.get(node.parent_key)

    def path_from_root(self, node: SearchNode) -> List[SearchNode]:
        path = []
        current = node
        while current is not None:
            path.append(current)
            current = self.parent_of(current)
        return list(reversed(path))
