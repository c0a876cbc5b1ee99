#!/usr/bin/env python3
"""Remote folder navigation for ODNAV.

RemoteFolderNavigator keeps a stack of visited folders and the listing of
the folder at its head. The stack only changes after the remote call behind
a navigation succeeds, so a failed navigation leaves both the stack and the
listing untouched.

Expired credentials are recovered by consuming one unit of the operation's
RetryBudget, forcing an interactive re-authentication and repeating the call
once. When the budget is gone RetryBudgetExhausted is raised and nothing is
retried automatically until ``retry()`` is called.
"""

import logging
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Optional, List, Callable, Iterable, TypeVar

from .errors import AuthRequired, NavigationInProgress, NetworkError, RetryBudgetExhausted
from .graph_client import GraphClient
from .models import DriveEntry, PathEntry
from .retry import (
    RetryBudget, LIST_ROOT, LIST_CHILDREN, CREATE_FOLDER, RENAME_FOLDER,
    DELETE_FOLDER, UPLOAD_FILE, AUTO_FETCH,
)
from .token_broker import TokenBroker
from .validators import validate_folder_name

logger = logging.getLogger(__name__)

T = TypeVar('T')


class RemoteFolderNavigator:
    """Path-stack navigator over a OneDrive folder tree."""

    def __init__(self, broker: TokenBroker, scopes: Iterable[str],
                 client: Optional[GraphClient] = None,
                 budget: Optional[RetryBudget] = None,
                 auto_fetch_window: float = 60.0,
                 sleep: Callable[[float], None] = time.sleep):
        """Initialize navigator.

        Args:
            broker: Token broker used for every remote call
            scopes: Fixed scope set requested for folder operations
            client: Graph transport (optional)
            budget: Retry budget shared by all operation classes
            auto_fetch_window: Wall-clock budget in seconds for ``auto_fetch``
            sleep: Sleep function used between automatic fetch attempts
        """
        self.broker = broker
        self.scopes = list(scopes)
        self.client = client or GraphClient()
        self.budget = budget or RetryBudget(ceiling=3)
        self.budget.configure(AUTO_FETCH, window=auto_fetch_window)
        self._sleep = sleep

        self.path_stack: List[PathEntry] = []
        self.current_listing: List[DriveEntry] = []
        self.auto_fetch_halted = False
        self._busy = threading.Lock()

    @classmethod
    def from_config(cls, config, broker: TokenBroker, **kwargs) -> 'RemoteFolderNavigator':
        return cls(
            broker,
            config.scopes,
            budget=RetryBudget(ceiling=config.retry_budget),
            auto_fetch_window=config.auto_fetch_budget_seconds,
            **kwargs,
        )

    @property
    def current_folder(self) -> Optional[PathEntry]:
        """Head of the path stack, or None at the root."""
        return self.path_stack[-1] if self.path_stack else None

    @property
    def at_root(self) -> bool:
        return not self.path_stack

    def breadcrumbs(self) -> List[str]:
        return [entry.display_name for entry in self.path_stack]

    @contextmanager
    def _serialized(self, operation: str):
        if not self._busy.acquire(blocking=False):
            raise NavigationInProgress(
                f"Cannot start {operation}: another folder operation is in flight"
            )
        try:
            yield
        finally:
            self._busy.release()

    def _call(self, operation: str, call: Callable[[str], T]) -> T:
        """Run ``call`` with a bearer token, recovering expiry within budget."""
        credential = self.broker.acquire_token(self.scopes)
        while True:
            try:
                result = call(credential.access_token)
            except AuthRequired as e:
                attempt = self.budget.consume(operation)
                logger.warning(f"{operation}: credential rejected ({e}); "
                               f"re-authenticating (attempt {attempt})")
                credential = self.broker.acquire_token_interactive(self.scopes)
                continue
            self.budget.reset(operation)
            return result

    def _fetch(self, operation: str, folder_id: Optional[str]) -> List[DriveEntry]:
        items = self._call(operation, lambda token: self.client.list_children(token, folder_id))
        return [DriveEntry.from_item(item) for item in items]

    # Listing and navigation

    def list_root(self) -> List[DriveEntry]:
        """List the drive root and clear the path stack."""
        with self._serialized(LIST_ROOT):
            entries = self._fetch(LIST_ROOT, None)
            self.current_listing = entries
            self.path_stack = []
            return list(entries)

    def list_children(self, folder_id: str, display_name: Optional[str] = None) -> List[DriveEntry]:
        """Enter a folder: list its children and push it on the stack."""
        if not folder_id:
            raise ValueError("Folder ID cannot be empty")
        if display_name is None:
            known = self._find(folder_id)
            display_name = known.name if known else folder_id

        with self._serialized(LIST_CHILDREN):
            entries = self._fetch(LIST_CHILDREN, folder_id)
            self.current_listing = entries
            self.path_stack.append(PathEntry(folder_id, display_name))
            return list(entries)

    def list_folder(self, folder_id: Optional[str] = None) -> List[DriveEntry]:
        """List any folder without moving through the tree."""
        operation = LIST_CHILDREN if folder_id else LIST_ROOT
        with self._serialized(operation):
            return self._fetch(operation, folder_id)

    def navigate_up(self) -> List[DriveEntry]:
        """Go to the parent folder. At the root this is the same as list_root()."""
        if len(self.path_stack) <= 1:
            return self.list_root()

        parent = self.path_stack[-2]
        with self._serialized(LIST_CHILDREN):
            entries = self._fetch(LIST_CHILDREN, parent.id)
            self.current_listing = entries
            self.path_stack.pop()
            return list(entries)

    def navigate_to(self, depth: int) -> List[DriveEntry]:
        """Jump to an ancestor: ``depth`` 0 is the root, N keeps N stack frames."""
        if depth < 0 or depth > len(self.path_stack):
            raise IndexError(f"No ancestor at depth {depth}")
        if depth == 0:
            return self.list_root()

        target = self.path_stack[depth - 1]
        with self._serialized(LIST_CHILDREN):
            entries = self._fetch(LIST_CHILDREN, target.id)
            self.current_listing = entries
            del self.path_stack[depth:]
            return list(entries)

    def refresh(self) -> List[DriveEntry]:
        """Re-list the current position without changing the stack."""
        folder = self.current_folder
        operation = LIST_CHILDREN if folder else LIST_ROOT
        with self._serialized(operation):
            entries = self._fetch(operation, folder.id if folder else None)
            self.current_listing = entries
            return list(entries)

    # Folder management

    def _find(self, item_id: str) -> Optional[DriveEntry]:
        for entry in self.current_listing:
            if entry.id == item_id:
                return entry
        return None

    def create_folder(self, name: str, parent_id: Optional[str] = None) -> DriveEntry:
        """Create a folder under ``parent_id`` (default: the current folder).

        The remote store renames on conflict. The new entry is appended to the
        current listing when it was created in the displayed folder.
        """
        name = validate_folder_name(name)
        current = self.current_folder
        if parent_id is None and current is not None:
            parent_id = current.id

        with self._serialized(CREATE_FOLDER):
            item = self._call(CREATE_FOLDER,
                              lambda token: self.client.create_folder(token, name, parent_id))
            entry = DriveEntry.from_item(item)
            displayed_id = current.id if current else None
            if parent_id == displayed_id:
                self.current_listing.append(entry)
            return entry

    def rename_folder(self, item_id: str, name: str) -> DriveEntry:
        """Rename an item and update its row in the current listing."""
        name = validate_folder_name(name)
        with self._serialized(RENAME_FOLDER):
            item = self._call(RENAME_FOLDER,
                              lambda token: self.client.rename_item(token, item_id, name))
            entry = DriveEntry.from_item(item)
            for index, existing in enumerate(self.current_listing):
                if existing.id == item_id:
                    self.current_listing[index] = entry
            for index, frame in enumerate(self.path_stack):
                if frame.id == item_id:
                    self.path_stack[index] = PathEntry(item_id, entry.name)
            return entry

    def delete_folder(self, item_id: str) -> None:
        """Delete an item. Items not in the current listing are a no-op success."""
        if self._find(item_id) is None:
            logger.debug(f"Delete of {item_id} skipped: not in current listing")
            return

        with self._serialized(DELETE_FOLDER):
            self._call(DELETE_FOLDER, lambda token: self.client.delete_item(token, item_id))
            self.current_listing = [e for e in self.current_listing if e.id != item_id]

    def upload_file(self, local_path: Path, remote_path: str) -> DriveEntry:
        """Upload a local file to a path relative to the drive root."""
        local_path = Path(local_path)
        if not local_path.is_file():
            raise FileNotFoundError(f"No such file: {local_path}")

        with self._serialized(UPLOAD_FILE):
            item = self._call(UPLOAD_FILE,
                              lambda token: self.client.upload_file(token, local_path, remote_path))
            return DriveEntry.from_item(item)

    # Automatic and manual recovery

    def auto_fetch(self) -> List[DriveEntry]:
        """Automatic listing of the current position (e.g. right after sign-in).

        Network failures are retried with exponential backoff until the
        AUTO_FETCH budget runs out of attempts or wall-clock time; then the
        navigator halts automatic fetching and raises RetryBudgetExhausted.
        While halted this raises immediately without touching the network.
        """
        if self.auto_fetch_halted:
            raise RetryBudgetExhausted(AUTO_FETCH, self.budget.used(AUTO_FETCH),
                                       "automatic fetching stopped; retry manually")
        self.budget.start(AUTO_FETCH)
        while True:
            try:
                entries = self.refresh()
            except NetworkError as e:
                try:
                    attempt = self.budget.consume(AUTO_FETCH)
                except RetryBudgetExhausted:
                    self.auto_fetch_halted = True
                    raise
                wait_time = 2 ** (attempt - 1)  # Exponential backoff: 1s, 2s, 4s
                logger.warning(f"Automatic fetch attempt {attempt} failed, retrying in {wait_time}s: {e}")
                self._sleep(wait_time)
                continue
            except RetryBudgetExhausted:
                self.auto_fetch_halted = True
                raise
            self.budget.reset(AUTO_FETCH)
            return entries

    def retry(self) -> List[DriveEntry]:
        """User-triggered retry: reset every budget and re-list the current position."""
        self.budget.reset()
        self.auto_fetch_halted = False
        logger.info("Manual retry requested; retry budgets reset")
        return self.refresh()

    def reset(self) -> None:
        """Forget the path stack and listing (used on sign-out)."""
        self.path_stack = []
        self.current_listing = []
        self.budget.reset()
        self.auto_fetch_halted = False
