# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Per-key mutual exclusion.
Operations on the same key are serialized while distinct keys proceed in parallel.
"""
import threading
from contextlib import ExitStack, contextmanager
from typing import Dict, Hashable, Iterable, Iterator


class _Entry:
    __slots__ = ("lock", "refs")

    def __init__(self):
        self.lock = threading.Lock()
        self.refs = 0


class KeyedLock:
    """
    A registry of locks indexed by key.

    Lock objects are created on first use and discarded once no thread holds or
    waits for them, so the registry does not grow with every id ever seen.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._entries: Dict[Hashable, _Entry] = {}

    def _checkout(self, key: Hashable) -> _Entry:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = _Entry()
                self._entries[key] = entry
            entry.refs += 1
            return entry

    def _checkin(self, key: Hashable, entry: _Entry) -> None:
        with self._guard:
            entry.refs -= 1
            if entry.refs == 0:
                del self._entries[key]

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        """
        Holds the lock for a single key for the duration of the block.
        """
        entry = self._checkout(key)
        try:
            entry.lock.acquire()
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            self._checkin(key, entry)

    @contextmanager
    def hold_many(self, keys: Iterable[Hashable]) -> Iterator[None]:
        """
        Holds the locks for several keys, acquired in sorted order so that two
        callers asking for overlapping sets cannot deadlock.
        """
        with ExitStack() as stack:
            for key in sorted(set(keys), key=repr):
                stack.enter_context(self.hold(key))
            yield

    def is_held(self, key: Hashable) -> bool:
        """Returns True if some thread currently holds or waits for the key."""
        with self._guard:
            return key in self._entries

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)
