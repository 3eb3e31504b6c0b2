"""
content.py - Page content stream cleaning.

Cleaning is a normalization pass: the page must render exactly as before.
  - identity ``cm`` operators are dropped
  - empty ``q ... Q`` pairs are dropped
  - a state setter repeating the operation right before it is dropped
  - multiple content streams on a page are joined into one

Sanitizing additionally repairs damaged streams: unknown operators (outside
BX/EX), operators with the wrong number of operands and unmatched ``Q`` are
dropped, and missing ``Q`` are appended.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from .errors import CodecFailureError, CorruptPDFError, OperationCancelledError, SubFailure
from .geometry import is_identity
from .lexer import Operation, parse_content, unparse_content

logger = logging.getLogger(__name__)

# Operand counts; None = variable
OPERATOR_ARITY = {
    "w": 1, "J": 1, "j": 1, "M": 1, "d": 2, "ri": 1, "i": 1, "gs": 1,
    "q": 0, "Q": 0, "cm": 6,
    "m": 2, "l": 2, "c": 6, "v": 4, "y": 4, "h": 0, "re": 4,
    "S": 0, "s": 0, "f": 0, "F": 0, "f*": 0, "B": 0, "B*": 0, "b": 0, "b*": 0, "n": 0,
    "W": 0, "W*": 0,
    "BT": 0, "ET": 0,
    "Tc": 1, "Tw": 1, "Tz": 1, "TL": 1, "Tf": 2, "Tr": 1, "Ts": 1,
    "Td": 2, "TD": 2, "Tm": 6, "T*": 0,
    "Tj": 1, "TJ": 1, "'": 1, '"': 3,
    "d0": 2, "d1": 6,
    "CS": 1, "cs": 1, "SC": None, "SCN": None, "sc": None, "scn": None,
    "G": 1, "g": 1, "RG": 3, "rg": 3, "K": 4, "k": 4,
    "sh": 1, "Do": 1, "BI": 1,
    "MP": 1, "DP": 2, "BMC": 1, "BDC": 2, "EMC": 0,
    "BX": 0, "EX": 0,
}

# Setting these twice in a row has the same effect as setting them once
IDEMPOTENT_SETTERS = {
    "w", "J", "j", "M", "d", "ri", "i", "gs",
    "CS", "cs", "SC", "SCN", "sc", "scn", "G", "g", "RG", "rg", "K", "k",
    "Tc", "Tw", "Tz", "TL", "Tf", "Tr", "Ts",
}


@dataclass
class CleanStats:
    removed: int = 0
    repaired: int = 0


@dataclass
class ContentCleanReport:
    pages: int = 0
    removed: int = 0
    repaired: int = 0
    failures: List[SubFailure] = field(default_factory=list)


def _sanitize(operations: List[Operation], stats: CleanStats) -> List[Operation]:
    result = []
    depth = 0
    compat = 0
    for operation in operations:
        operands, operator = operation
        arity = OPERATOR_ARITY.get(operator, -1)
        if arity == -1:
            if compat == 0:
                stats.repaired += 1
                logger.debug(f"Dropping unknown operator {operator!r}")
                continue
        elif arity is None:
            if not operands:
                stats.repaired += 1
                continue
        elif len(operands) != arity:
            stats.repaired += 1
            logger.debug(f"Dropping {operator!r} with {len(operands)} operands (expected {arity})")
            continue

        if operator == "BX":
            compat += 1
        elif operator == "EX":
            compat = max(0, compat - 1)
        elif operator == "q":
            depth += 1
        elif operator == "Q":
            if depth == 0:
                stats.repaired += 1
                continue
            depth -= 1
        result.append(operation)

    if depth:
        stats.repaired += depth
        result.extend(Operation([], "Q") for _ in range(depth))
    return result


def clean_operations(operations: List[Operation], sanitize: bool = False) -> Tuple[List[Operation], CleanStats]:
    """Normalize a parsed content stream."""
    stats = CleanStats()
    if sanitize:
        operations = _sanitize(operations, stats)

    result: List[Operation] = []
    for operation in operations:
        operands, operator = operation
        if (
            operator == "cm"
            and len(operands) == 6
            and all(isinstance(v, (int, float)) for v in operands)
            and is_identity(operands)
        ):
            stats.removed += 1
            continue
        if operator == "Q" and result and result[-1].operator == "q":
            result.pop()
            stats.removed += 2
            continue
        if operator in IDEMPOTENT_SETTERS and result and result[-1] == operation:
            stats.removed += 1
            continue
        result.append(operation)
    return result, stats


def clean_content(data: bytes, sanitize: bool = False) -> Tuple[bytes, CleanStats]:
    operations, stats = clean_operations(parse_content(data), sanitize)
    return unparse_content(operations), stats


def clean_document(
    document,
    sanitize: bool = False,
    cancel_event: Optional[threading.Event] = None,
) -> ContentCleanReport:
    """Clean every page's content in place. Unparseable pages are left alone."""
    report = ContentCleanReport()
    for index in range(document.page_count):
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelledError(f"Cancelled at page {index}")
        if not document.content_refs(index):
            continue
        try:
            data, stats = clean_content(document.page_content(index), sanitize)
        except (CodecFailureError, CorruptPDFError) as exc:
            logger.warning(f"Page {index}: content left as is: {exc}")
            report.failures.append(SubFailure.from_exception(document.pages[index].obj_id, exc))
            continue
        document.set_page_content(index, data)
        report.pages += 1
        report.removed += stats.removed
        report.repaired += stats.repaired

    logger.debug(
        f"Cleaned {report.pages} pages: {report.removed} redundant and "
        f"{report.repaired} invalid operators"
    )
    return report
