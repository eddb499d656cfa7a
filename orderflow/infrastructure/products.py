from functools import lru_cache
from typing import Optional

import httpx
from pydantic import ValidationError as SchemaError

from orderflow.application.schemas import ProductSnapshot
from orderflow.core.logging_config import get_logger
from orderflow.core_settings import get_settings
from orderflow.domain.errors import CollaboratorUnavailableError, NotFoundError

CATALOG = "product-catalog"

logger = get_logger(__name__, collaborator=CATALOG)


class ProductCatalogClient:
    """Reads product snapshots and stock levels from the product service."""

    def __init__(self, base_url: str, timeout: float = 5.0, client: Optional[httpx.Client] = None):
        self.client = client or httpx.Client(base_url=base_url, timeout=timeout)

    def get_product(self, product_id: int) -> ProductSnapshot:
        try:
            response = self.client.get(f"/products/{product_id}")
        except httpx.HTTPError as e:
            logger.error(f"Failed to fetch product {product_id}: {e}")
            raise CollaboratorUnavailableError(CATALOG) from e

        if response.status_code == 404:
            raise NotFoundError(f"Product {product_id} not found", {"product_id": product_id})
        if response.status_code != 200:
            logger.error(f"Product service answered {response.status_code} for product {product_id}")
            raise CollaboratorUnavailableError(CATALOG)

        try:
            product = ProductSnapshot.model_validate(response.json())
        except (ValueError, SchemaError) as e:
            logger.error(f"Malformed product payload for {product_id}: {e}")
            raise CollaboratorUnavailableError(CATALOG) from e

        if not product.is_active:
            raise NotFoundError(f"Product {product_id} is not active", {"product_id": product_id})
        return product

    def has_stock(self, product_id: int, quantity: int) -> bool:
        # Fail closed: any doubt about stock rejects the line
        try:
            response = self.client.get(f"/products/{product_id}/stock")
            response.raise_for_status()
            available = int(response.json()["stock"])
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
            logger.error(f"Failed to check stock for product {product_id}: {e}")
            return False
        return available >= quantity

    def close(self) -> None:
        self.client.close()


@lru_cache
def get_catalog() -> ProductCatalogClient:
    settings = get_settings()
    return ProductCatalogClient(settings.PRODUCTS_SERVICE_URL, settings.PRODUCTS_TIMEOUT_SECONDS)
