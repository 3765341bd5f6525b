"""Branching message-tree traversal over a thread's persisted messages."""

import logging
from collections import deque
from typing import Any, Dict, Iterable, List, Optional

from .models import MAX_PATH_DEPTH, UNSET, BranchInfo, Message
from .storage import DuckDBStorage

logger = logging.getLogger(__name__)


def _creation_key(message: Message):
    return (message.created_at, message.id)


class MessageTree:
    """In-memory parent -> children index of one thread's messages.

    Built once per operation so walks never re-query storage per hop.
    """

    def __init__(self, messages: Iterable[Message]):
        self.by_id: Dict[int, Message] = {}
        self.children: Dict[Optional[int], List[Message]] = {}
        for message in sorted(messages, key=_creation_key):
            self.by_id[message.id] = message
            self.children.setdefault(message.parent_id, []).append(message)

    def __len__(self) -> int:
        return len(self.by_id)

    def __contains__(self, message_id: int) -> bool:
        return message_id in self.by_id

    def latest_message(self) -> Optional[Message]:
        if not self.by_id:
            return None
        return max(self.by_id.values(), key=_creation_key)

    def path_to(self, leaf_id: int) -> List[Message]:
        """Messages from the root down to ``leaf_id``.

        The walk stops at MAX_PATH_DEPTH hops or on the first revisited node.
        """
        path: List[Message] = []
        seen = set()
        current_id: Optional[int] = leaf_id
        while current_id is not None and len(path) < MAX_PATH_DEPTH:
            if current_id in seen:
                logger.warning(f"Cycle detected in message tree at message {current_id}")
                break
            message = self.by_id.get(current_id)
            if message is None:
                break
            seen.add(current_id)
            path.append(message)
            current_id = message.parent_id
        path.reverse()
        return path

    def siblings_of(self, message: Message) -> List[Message]:
        return self.children.get(message.parent_id, [])

    def descendant_ids(self, message_id: int) -> List[int]:
        """Ids of every transitive child of ``message_id`` (excluding itself)."""
        result: List[int] = []
        seen = {message_id}
        queue = deque([message_id])
        while queue:
            current = queue.popleft()
            for child in self.children.get(current, []):
                if child.id not in seen:
                    seen.add(child.id)
                    result.append(child.id)
                    queue.append(child.id)
        return result

    def latest_leaf(self, message_id: int) -> int:
        """Follow the most recently created child at each level down to a leaf."""
        current = message_id
        seen = {current}
        for _ in range(MAX_PATH_DEPTH):
            children = self.children.get(current)
            if not children:
                break
            newest = children[-1].id
            if newest in seen:
                break
            seen.add(newest)
            current = newest
        return current


class MessageTreeStore:
    """Active-path, branch and subtree operations on top of DuckDBStorage."""

    def __init__(self, storage: DuckDBStorage):
        self.storage = storage

    async def load_tree(self, thread_id: int) -> MessageTree:
        return MessageTree(await self.storage.get_thread_messages(thread_id))

    async def get_active_path(self, thread_id: int, leaf_id: Any = UNSET) -> List[Message]:
        """Ordered messages from the root to the selected leaf.

        ``leaf_id=None`` selects the root and yields ``[]``. When no leaf is
        given the thread's active leaf is used, and when the thread never had
        one the most recently created message is the tip.
        """
        if leaf_id is None:
            return []

        if leaf_id is UNSET:
            thread = await self.storage.get_thread(thread_id)
            if thread is None:
                return []
            if thread.active_leaf_set:
                if thread.active_leaf_id is None:
                    return []
                leaf_id = thread.active_leaf_id

        tree = await self.load_tree(thread_id)
        if leaf_id is UNSET:
            latest = tree.latest_message()
            if latest is None:
                return []
            leaf_id = latest.id

        return tree.path_to(leaf_id)

    async def get_branch_info(self, message_id: int) -> Optional[BranchInfo]:
        message = await self.storage.get_message(message_id)
        if message is None:
            return None
        tree = await self.load_tree(message.thread_id)
        siblings = tree.siblings_of(message)
        ids = [sibling.id for sibling in siblings]
        return BranchInfo(current=ids.index(message.id) + 1, total=len(ids), siblings=ids)

    async def delete_subtree(self, message_id: int) -> List[int]:
        """Delete a message and all of its descendants.

        If the thread's active leaf is removed, the leaf moves to the deleted
        message's parent (``None`` for a root message).

        Returns:
            Ids of the deleted messages
        """
        message = await self.storage.get_message(message_id)
        if message is None:
            return []
        tree = await self.load_tree(message.thread_id)
        doomed = [message_id] + tree.descendant_ids(message_id)
        await self._delete(tree, message.thread_id, doomed, fallback_leaf=message.parent_id)
        logger.debug(f"Deleted subtree of message {message_id} ({len(doomed)} messages)")
        return doomed

    async def delete_children(self, message_id: int) -> List[int]:
        """Delete every descendant of a message, keeping the message itself."""
        message = await self.storage.get_message(message_id)
        if message is None:
            return []
        tree = await self.load_tree(message.thread_id)
        doomed = tree.descendant_ids(message_id)
        if doomed:
            await self._delete(tree, message.thread_id, doomed, fallback_leaf=message_id)
        return doomed

    async def _delete(
        self,
        tree: MessageTree,
        thread_id: int,
        doomed: List[int],
        fallback_leaf: Optional[int],
    ) -> None:
        thread = await self.storage.get_thread(thread_id)
        if thread is not None and thread.active_leaf_set:
            current_leaf = thread.active_leaf_id
        else:
            # An unset leaf means the newest message is the tip
            latest = tree.latest_message()
            current_leaf = latest.id if latest else None
        new_leaf: Any = UNSET
        if current_leaf is not None and current_leaf in doomed:
            new_leaf = fallback_leaf
        await self.storage.delete_messages(thread_id, doomed, new_active_leaf=new_leaf)

    async def switch_branch(self, message_id: int) -> Optional[int]:
        """Make the newest leaf under ``message_id`` the thread's active leaf."""
        message = await self.storage.get_message(message_id)
        if message is None:
            return None
        tree = await self.load_tree(message.thread_id)
        leaf_id = tree.latest_leaf(message_id)
        await self.storage.set_active_leaf(message.thread_id, leaf_id)
        return leaf_id
