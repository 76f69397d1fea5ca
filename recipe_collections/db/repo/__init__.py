from recipe_collections.db.repo.collections_repo import CollectionsRepo
from recipe_collections.db.repo.content_repo import ContentFactsRepo

__all__ = ["CollectionsRepo", "ContentFactsRepo"]
