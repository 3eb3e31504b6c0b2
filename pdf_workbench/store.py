"""
store.py - In-memory indirect object graph.

The store is an arena: objects live in a dict keyed by integer id and refer to
each other through PDFReference values. Reachability, duplicate merging and
renumbering all work on ids with explicit stacks and visited sets, so cyclic
graphs (pages pointing back at their parents, annotations pointing at pages)
terminate.
"""

from __future__ import annotations

import heapq
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple

from .errors import InvalidArgumentError, NotFoundError
from .primitives import (
    PDFReference,
    PDFStream,
    copy_value,
    iter_references,
    name_of,
)
from .serializer import serialize

logger = logging.getLogger(__name__)

MAX_GENERATION = 65535

# Dictionary types that must keep their own identity when merging duplicates
_UNMERGEABLE_TYPES = {"Page", "Pages", "Catalog"}


@dataclass
class CompactionResult:
    """A compacted copy of a store and how ids moved."""
    store: "ObjectStore"
    remap: Dict[int, int]
    removed: int = 0
    merged: int = 0
    dangling: int = 0

    def remap_value(self, value: Any) -> Any:
        return remap_references(value, self.remap, self.store)


@dataclass
class _Form:
    """Canonical shape of one object used while looking for duplicates."""
    key: Any
    refs: List[int] = field(default_factory=list)


class ObjectStore:
    """Mapping of object id -> object value with generations and roots."""

    def __init__(self):
        self._objects: Dict[int, Any] = {}
        self._generations: Dict[int, int] = {}
        self._free: List[int] = []
        self._roots: Set[int] = set()
        self._next_id = 1

    def __len__(self) -> int:
        return len(self._objects)

    def __contains__(self, obj_id: int) -> bool:
        return obj_id in self._objects

    def ids(self) -> List[int]:
        return sorted(self._objects)

    def items(self) -> Iterator[Tuple[int, int, Any]]:
        """Yield ``(obj_id, generation, value)`` in id order."""
        for obj_id in sorted(self._objects):
            yield obj_id, self._generations.get(obj_id, 0), self._objects[obj_id]

    # ------------------------------------------------------------------
    # Basic access
    # ------------------------------------------------------------------

    def get(self, obj_id: int) -> Any:
        try:
            return self._objects[obj_id]
        except KeyError:
            raise NotFoundError(f"Object {obj_id} not found") from None

    def generation(self, obj_id: int) -> int:
        return self._generations.get(obj_id, 0)

    def reference(self, obj_id: int) -> PDFReference:
        if obj_id not in self._objects:
            raise NotFoundError(f"Object {obj_id} not found")
        return PDFReference(obj_id, self.generation(obj_id))

    def put(self, value: Any) -> PDFReference:
        """Store a new object and return a reference to it.

        Freed slots are reused with their bumped generation before new ids are
        allocated.
        """
        if self._free:
            obj_id = heapq.heappop(self._free)
        else:
            obj_id = self._next_id
            self._next_id += 1
        self._objects[obj_id] = value
        return PDFReference(obj_id, self._generations.get(obj_id, 0))

    def insert(self, obj_id: int, value: Any, generation: int = 0) -> None:
        """Place an object at an explicit id (used when loading files)."""
        if obj_id <= 0:
            raise InvalidArgumentError(f"Invalid object id {obj_id}")
        self._objects[obj_id] = value
        self._generations[obj_id] = generation
        if obj_id in self._free:
            self._free.remove(obj_id)
            heapq.heapify(self._free)
        self._next_id = max(self._next_id, obj_id + 1)

    def replace(self, obj_id: int, value: Any) -> None:
        if obj_id not in self._objects:
            raise NotFoundError(f"Object {obj_id} not found")
        self._objects[obj_id] = value

    def delete(self, obj_id: int) -> None:
        if obj_id not in self._objects:
            raise NotFoundError(f"Object {obj_id} not found")
        del self._objects[obj_id]
        self._roots.discard(obj_id)
        generation = self._generations.get(obj_id, 0) + 1
        self._generations[obj_id] = generation
        # A slot whose generation is exhausted is never handed out again
        if generation < MAX_GENERATION:
            heapq.heappush(self._free, obj_id)

    def resolve(self, value: Any) -> Any:
        """Follow references until a direct value is reached.

        Dangling references (missing id or stale generation) resolve to None
        with a diagnostic.
        """
        seen: Set[int] = set()
        while isinstance(value, PDFReference):
            if value.obj_id in seen:
                logger.warning(f"Reference loop at object {value.obj_id}")
                return None
            seen.add(value.obj_id)
            if not self.is_live(value):
                logger.warning(f"Dangling reference {value.obj_id} {value.generation} R")
                return None
            value = self._objects[value.obj_id]
        return value

    def is_live(self, ref: PDFReference) -> bool:
        return ref.obj_id in self._objects and self.generation(ref.obj_id) == ref.generation

    # ------------------------------------------------------------------
    # Roots and reachability
    # ------------------------------------------------------------------

    @property
    def roots(self) -> Set[int]:
        return set(self._roots)

    def mark_root(self, obj_id: int) -> None:
        if obj_id not in self._objects:
            raise NotFoundError(f"Object {obj_id} not found")
        self._roots.add(obj_id)

    def unmark_root(self, obj_id: int) -> None:
        self._roots.discard(obj_id)

    def reachable(self, extra_roots: Optional[Set[int]] = None) -> Set[int]:
        """Mark phase: ids reachable from the roots. Dangling edges are dropped."""
        visited: Set[int] = set()
        stack = [obj_id for obj_id in self._roots | set(extra_roots or ()) if obj_id in self._objects]
        dangling = 0
        while stack:
            obj_id = stack.pop()
            if obj_id in visited:
                continue
            visited.add(obj_id)
            for ref in iter_references(self._objects[obj_id]):
                if ref.obj_id in visited:
                    continue
                if ref.obj_id in self._objects:
                    stack.append(ref.obj_id)
                else:
                    dangling += 1
        if dangling:
            logger.debug(f"Dropped {dangling} dangling edges during reachability walk")
        return visited

    # ------------------------------------------------------------------
    # Compaction
    # ------------------------------------------------------------------

    def copy(self) -> "ObjectStore":
        return self.compact(sweep=False).store

    def compact(self, sweep: bool = True, dedup: bool = False, renumber: bool = False) -> CompactionResult:
        """Return a compacted copy of the store.

        sweep:    drop objects not reachable from the roots
        dedup:    merge structurally identical dictionaries and streams
        renumber: assign a dense id space 1..N (generation 0)
        """
        live = self.reachable() if sweep else set(self._objects)
        removed = len(self._objects) - len(live)

        leader = {obj_id: obj_id for obj_id in live}
        merged = 0
        if dedup:
            leader = self._find_duplicates(live)
            merged = sum(1 for obj_id, lead in leader.items() if obj_id != lead)

        survivors = sorted(obj_id for obj_id, lead in leader.items() if obj_id == lead)
        if renumber:
            new_ids = {old: new for new, old in enumerate(survivors, start=1)}
        else:
            new_ids = {old: old for old in survivors}
        remap = {obj_id: new_ids[lead] for obj_id, lead in leader.items()}

        result = ObjectStore()
        for old in survivors:
            generation = 0 if renumber else self.generation(old)
            result._generations[new_ids[old]] = generation
        counter = _DanglingCounter()
        for old in survivors:
            new_id = new_ids[old]
            value = remap_references(self._objects[old], remap, result, counter)
            result.insert(new_id, value, result._generations[new_id])
        for root in self._roots:
            if root in remap:
                result._roots.add(remap[root])

        if removed or merged:
            logger.debug(
                f"Compaction: {len(self._objects)} -> {len(result)} objects "
                f"({removed} unreachable, {merged} duplicates)"
            )
        return CompactionResult(result, remap, removed, merged, counter.count)

    def _find_duplicates(self, live: Set[int]) -> Dict[int, int]:
        """Group equivalent objects by partition refinement.

        Objects start in classes keyed by their shape with references blanked
        out; classes are split until every member's references point into the
        same classes as its peers. Cycles are handled because classes, not
        objects, are compared.
        """
        forms: Dict[int, _Form] = {}
        for obj_id in live:
            value = self._objects[obj_id]
            refs: List[int] = []

            def blank_reference(ref: PDFReference, refs=refs) -> bytes:
                refs.append(ref.obj_id)
                return b"0 0 R"

            if isinstance(value, PDFStream):
                key = ("stream", serialize(value.dictionary, blank_reference, sort_keys=True), value.data)
            elif isinstance(value, dict) and name_of(value.get("Type")) not in _UNMERGEABLE_TYPES:
                key = ("dict", serialize(value, blank_reference, sort_keys=True))
            else:
                key = ("unique", obj_id)
                refs = [ref.obj_id for ref in iter_references(value)]
            forms[obj_id] = _Form(key, refs)

        labels: Dict[int, int] = {}
        by_key: Dict[Any, int] = {}
        for obj_id in sorted(live):
            labels[obj_id] = by_key.setdefault(forms[obj_id].key, len(by_key))

        class_count = len(by_key)
        while True:
            signatures: Dict[Any, int] = {}
            new_labels: Dict[int, int] = {}
            for obj_id in sorted(live):
                signature = (labels[obj_id], tuple(labels.get(ref, -1) for ref in forms[obj_id].refs))
                new_labels[obj_id] = signatures.setdefault(signature, len(signatures))
            labels = new_labels
            if len(signatures) == class_count:
                break
            class_count = len(signatures)

        leaders: Dict[int, int] = {}
        for obj_id in sorted(live):
            leaders.setdefault(labels[obj_id], obj_id)
        return {obj_id: leaders[labels[obj_id]] for obj_id in live}


class _DanglingCounter:
    def __init__(self):
        self.count = 0


def remap_references(
    value: Any,
    remap: Dict[int, int],
    target: Optional[ObjectStore] = None,
    counter: Optional[_DanglingCounter] = None,
) -> Any:
    """Copy a value, rewriting reference ids through ``remap``.

    References to ids missing from the map become None (null).
    """

    def map_reference(ref: PDFReference):
        new_id = remap.get(ref.obj_id)
        if new_id is None:
            logger.warning(f"Dropping dangling reference {ref.obj_id} {ref.generation} R")
            if counter is not None:
                counter.count += 1
            return None
        generation = target.generation(new_id) if target is not None else 0
        return PDFReference(new_id, generation)

    return copy_value(value, map_reference)
