from .schemas import Product, SizeStock, normalize_sizes
from .service import CatalogService

__all__ = ["Product", "SizeStock", "normalize_sizes", "CatalogService"]
