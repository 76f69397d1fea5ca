from __future__ import annotations

CATEGORIES = (
    "cuisine",
    "region",
    "scene",
    "method",
    "taste",
    "crowd",
    "occasion",
    "ingredient",
    "theme",
    "topic",
)

CATEGORY_LABELS = {
    "cuisine": "菜系",
    "region": "区域",
    "scene": "场景",
    "method": "烹饪方法",
    "taste": "口味",
    "crowd": "人群",
    "occasion": "场合",
    "ingredient": "食材",
    "theme": "主题",
    "topic": "专题",
}

# Listing pages query these groups; "theme" pages also show legacy "topic" rows.
CATEGORY_GROUPS = {
    "theme": ("theme", "topic"),
}

_PATH_SEGMENTS = {
    "crowd": "dietary",
    "topic": "theme",
}

# Reference type -> (rule field, tag sub-category, collection category).
AUTO_REF_TYPES = {
    "cuisine": ("cuisine", None, "cuisine"),
    "region": ("location", None, "region"),
    "location": ("location", None, "region"),
    "scene": ("tag", "scene", "scene"),
    "method": ("tag", "method", "method"),
    "taste": ("tag", "taste", "taste"),
    "crowd": ("tag", "crowd", "crowd"),
    "occasion": ("tag", "occasion", "occasion"),
    "ingredient": ("tag", "ingredient", "ingredient"),
}


def category_group(category: str) -> tuple[str, ...]:
    c = str(category or "").strip().lower()
    if c not in CATEGORIES:
        return ()
    return CATEGORY_GROUPS.get(c, (c,))


def path_prefix(category: str) -> str:
    c = str(category or "").strip().lower()
    if not c:
        return "/recipe"
    return f"/recipe/{_PATH_SEGMENTS.get(c, c)}"


def collection_path(category: str, slug: str) -> str:
    return f"{path_prefix(category)}/{str(slug).strip().strip('/')}"
