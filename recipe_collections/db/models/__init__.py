from recipe_collections.db.models.collections import AggregationConfig, Collection, CollectionTranslation
from recipe_collections.db.models.content import Recipe, RecipeTag

__all__ = [
    "AggregationConfig",
    "Collection",
    "CollectionTranslation",
    "Recipe",
    "RecipeTag",
]
