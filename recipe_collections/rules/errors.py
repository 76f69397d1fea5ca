from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class CollectionErrorCode:
    code: str
    message: str


COLL_001_RULES_INVALID = CollectionErrorCode(
    "COLL_001_RULES_INVALID",
    "Collection rules validation failed.",
)
COLL_002_COLLECTION_NOT_FOUND = CollectionErrorCode(
    "COLL_002_COLLECTION_NOT_FOUND",
    "Requested collection was not found.",
)
COLL_003_RECOMPUTE_FAILED = CollectionErrorCode(
    "COLL_003_RECOMPUTE_FAILED",
    "Collection aggregate recompute failed.",
)
COLL_004_BLOCKS_INVALID = CollectionErrorCode(
    "COLL_004_BLOCKS_INVALID",
    "Aggregation block configuration is invalid.",
)
COLL_005_PARSE_FAILED = CollectionErrorCode(
    "COLL_005_PARSE_FAILED",
    "Rules file parse failed.",
)
COLL_006_INVALID_STATE = CollectionErrorCode(
    "COLL_006_INVALID_STATE",
    "Collection is not in a state that allows this operation.",
)


class CollectionError(RuntimeError):
    def __init__(self, err: CollectionErrorCode, detail: str = "") -> None:
        suffix = f" detail={detail}" if detail else ""
        super().__init__(f"{err.code}: {err.message}{suffix}")
        self.err = err
        self.detail = detail


class RulesValidationError(CollectionError):
    def __init__(self, errors: list[str]) -> None:
        super().__init__(COLL_001_RULES_INVALID, "; ".join(errors[:10]))
        self.errors = list(errors)
