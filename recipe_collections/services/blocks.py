from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any

from recipe_collections.rules.errors import COLL_004_BLOCKS_INVALID, CollectionError
from recipe_collections.services.categories import CATEGORIES
from recipe_collections.services.resolver import CollectionResolver

CONFIG_SECTION = "aggregation_blocks"
MAX_CARD_COUNT = 50

logger = logging.getLogger("aggregation_blocks")


@dataclass(frozen=True)
class BlockConfig:
    category: str
    enabled: bool
    order: int
    card_count: int
    min_threshold: int
    title: str
    title_en: str = ""
    subtitle: str = ""
    subtitle_en: str = ""
    collapsed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


DEFAULT_BLOCKS: tuple[BlockConfig, ...] = (
    BlockConfig("cuisine", True, 1, 8, 0, "按菜系浏览", "Browse by Cuisine", "探索中国各地经典菜系", "Explore classic Chinese cuisines"),
    BlockConfig("scene", True, 2, 6, 0, "按场景浏览", "Browse by Scene", "根据做饭场景找食谱", "Find recipes by cooking scene"),
    BlockConfig(
        "method", True, 3, 6, 0, "按烹饪方式浏览", "Browse by Cooking Method", "炒、炖、蒸、煮...",
        "Stir-fry, stew, steam, boil...", collapsed=True,
    ),
    BlockConfig(
        "taste", True, 4, 6, 0, "按口味浏览", "Browse by Taste", "酸甜苦辣咸",
        "Sour, sweet, bitter, spicy, salty", collapsed=True,
    ),
    BlockConfig(
        "crowd", True, 5, 6, 0, "按人群浏览", "Browse by Dietary", "减脂、增肌、儿童...",
        "Weight loss, muscle gain, kids...", collapsed=True,
    ),
    BlockConfig("ingredient", True, 6, 8, 0, "按食材浏览", "Browse by Ingredient", "猪肉、鸡肉、豆腐...", "Pork, chicken, tofu..."),
    BlockConfig("theme", True, 7, 6, 0, "专题精选", "Featured Topics", "策划主题合集", "Curated theme collections"),
)

_ALIASES = {
    "type": "category",
    "cardCount": "card_count",
    "minThreshold": "min_threshold",
    "titleEn": "title_en",
    "subtitleEn": "subtitle_en",
}


def _int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_block(raw: Any) -> tuple[BlockConfig | None, list[str]]:
    if isinstance(raw, BlockConfig):
        return raw, []
    if not isinstance(raw, dict):
        return None, ["区块必须是对象"]
    data = {_ALIASES.get(str(k), str(k)): v for k, v in raw.items()}
    errors: list[str] = []

    category = str(data.get("category") or "").strip().lower()
    if category not in CATEGORIES:
        return None, [f"无效的区块类型: {category or '(空)'}"]
    order = _int(data.get("order"))
    if order is None:
        errors.append(f"{category}: order 必须是整数")
    card_count = _int(data.get("card_count"))
    if card_count is None or not (1 <= card_count <= MAX_CARD_COUNT):
        errors.append(f"{category}: card_count 必须在 1 到 {MAX_CARD_COUNT} 之间")
    min_threshold = _int(data.get("min_threshold", 0))
    if min_threshold is None or min_threshold < 0:
        errors.append(f"{category}: min_threshold 不能为负数")
    title = str(data.get("title") or "").strip()
    if not title:
        errors.append(f"{category}: title 不能为空")
    if errors:
        return None, errors
    return (
        BlockConfig(
            category=category,
            enabled=bool(data.get("enabled", True)),
            order=int(order),
            card_count=int(card_count),
            min_threshold=int(min_threshold),
            title=title,
            title_en=str(data.get("title_en") or ""),
            subtitle=str(data.get("subtitle") or ""),
            subtitle_en=str(data.get("subtitle_en") or ""),
            collapsed=bool(data.get("collapsed", False)),
        ),
        [],
    )


def validate_blocks(raw_blocks: Any) -> tuple[list[BlockConfig], list[str]]:
    if not isinstance(raw_blocks, list):
        return [], ["blocks 必须是数组"]
    blocks: list[BlockConfig] = []
    errors: list[str] = []
    seen: set[str] = set()
    for i, raw in enumerate(raw_blocks, start=1):
        block, errs = parse_block(raw)
        errors.extend(f"区块 {i}: {e}" for e in errs)
        if block is None:
            continue
        if block.category in seen:
            errors.append(f"区块 {i}: 重复的区块类型 {block.category}")
            continue
        seen.add(block.category)
        blocks.append(block)
    return blocks, errors


def resolve_blocks(stored: list[Any] | None) -> list[BlockConfig]:
    """
    Merge stored blocks over the defaults.

    A stored entry replaces the default of its category entirely; the first
    valid entry per category wins. Output is enabled blocks sorted by order.
    """
    by_category: dict[str, BlockConfig] = {}
    for raw in stored or []:
        block, errs = parse_block(raw)
        if block is None:
            logger.warning("stored block ignored: %s", "; ".join(errs))
            continue
        by_category.setdefault(block.category, block)
    for default in DEFAULT_BLOCKS:
        by_category.setdefault(default.category, default)
    merged = [b for b in by_category.values() if b.enabled]
    return sorted(merged, key=lambda b: (b.order, b.category))


class AggregationBlocks:
    def __init__(self, store, resolver: CollectionResolver | None = None) -> None:
        self.store = store
        self.resolver = resolver or CollectionResolver(store)

    def stored_blocks(self) -> list[Any]:
        try:
            content = self.store.get_config(CONFIG_SECTION) or {}
        except Exception as e:
            logger.warning("block config read failed, using defaults: %s: %s", type(e).__name__, e)
            return []
        blocks = content.get("blocks")
        return blocks if isinstance(blocks, list) else []

    def get_blocks(self) -> list[BlockConfig]:
        return resolve_blocks(self.stored_blocks())

    def save_blocks(self, raw_blocks: Any, *, updated_by: str = "admin") -> list[BlockConfig]:
        blocks, errors = validate_blocks(raw_blocks)
        if errors:
            raise CollectionError(COLL_004_BLOCKS_INVALID, "; ".join(errors[:10]))
        self.store.save_config(CONFIG_SECTION, {"blocks": [b.to_dict() for b in blocks]}, updated_by=updated_by)
        return resolve_blocks(blocks)

    def build_aggregation_page(self, locale: str = "zh") -> dict[str, Any]:
        """Blocks with their qualified cards; blocks left empty after thresholds are dropped."""
        out: list[dict[str, Any]] = []
        for block in self.get_blocks():
            cards = self.resolver.list_qualified(block.category, locale, block.card_count)
            if block.min_threshold > 0:
                cards = [c for c in cards if c.published_count >= block.min_threshold]
            if not cards:
                continue
            row = block.to_dict()
            row["collections"] = [c.to_dict() for c in cards]
            out.append(row)
        return {"locale": locale, "blocks": out}
