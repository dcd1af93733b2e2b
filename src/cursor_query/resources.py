from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from .cache import CacheStore
from .fetcher import FetchCoordinator, FetchFn
from .graphql_api import GraphQLClient
from .keys import QueryKey, build
from .pagination import Connection, PaginationController
from .params import (
    CategoriesParams,
    CollectionsParams,
    DetailParams,
    OrdersParams,
    PaginationParams,
    ProductsParams,
    StoresParams,
    validate_params,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResourceAdapter:
    """A paginated GraphQL resource with a closed parameter schema.

    List pages live under ``<name>.list`` and single records under
    ``<name>.detail``, so invalidating ``<name>`` covers both.
    """

    name: str
    schema: type[PaginationParams]
    document: str
    connection_path: str
    detail_document: str | None = None
    detail_path: str | None = None
    id_field: str = "id"
    # per-resource ttl overrides; None keeps the store default
    stale_time_ms: int | None = None
    detail_stale_time_ms: int | None = None

    @property
    def list_resource(self) -> str:
        return f"{self.name}.list"

    @property
    def detail_resource(self) -> str:
        return f"{self.name}.detail"

    def key(self, params: Mapping[str, Any] | PaginationParams | None = None) -> QueryKey:
        if params is None:
            params = self.schema().params()
        elif isinstance(params, PaginationParams):
            if not isinstance(params, self.schema):
                raise TypeError(
                    f"{self.name} expects {self.schema.__name__}, got {type(params).__name__}"
                )
            params = params.params()
        validate_params(self.schema, params)
        return build(self.list_resource, params)

    def detail_key(self, record_id: str | int) -> QueryKey:
        return build(self.detail_resource, DetailParams(record_id).params())

    def fetch_fn(self, client: GraphQLClient) -> FetchFn:
        return client.query_fn(self.document, self.connection_path)

    def detail_fetch_fn(self, client: GraphQLClient) -> FetchFn:
        if self.detail_document is None or self.detail_path is None:
            raise NotImplementedError(f"{self.name} has no detail query")
        return client.detail_fn(self.detail_document, self.detail_path)

    def configure(self, store: CacheStore) -> None:
        """Register this resource's stale times with ``store``."""
        if self.stale_time_ms is not None:
            store.set_ttl(self.list_resource, self.stale_time_ms)
        if self.detail_stale_time_ms is not None:
            store.set_ttl(self.detail_resource, self.detail_stale_time_ms)

    def paginate(self, coordinator: FetchCoordinator, client: GraphQLClient) -> PaginationController:
        self.configure(coordinator.store)
        return PaginationController(
            coordinator, self.list_resource, self.fetch_fn(client), schema=self.schema
        )


ORDERS = ResourceAdapter(
    name="orders",
    schema=OrdersParams,
    document="""
  query GetOrders($first: Int, $last: Int, $before: String, $after: String) {
    orders(first: $first, last: $last, before: $before, after: $after) {
      nodes {
        orderId
        name
        orderDate
        orderStatus
        storeId
        storeName
        currencyCode
        total
      }
      totalCount
      pageInfo { hasNextPage hasPreviousPage startCursor endCursor }
    }
  }
""",
    connection_path="orders",
    detail_document="""
  query GetOrder($id: Int!) {
    orderView(input: {id: $id}) {
      id
      status
      subTotal
      total
      created
      store { id name currencyCode }
    }
  }
""",
    detail_path="orderView",
    id_field="orderId",
    stale_time_ms=120_000,
    detail_stale_time_ms=60_000,
)

PRODUCTS = ResourceAdapter(
    name="products",
    schema=ProductsParams,
    document="""
  query HoldingProducts($first: Int, $after: String, $before: String, $last: Int) {
    holdingProducts(first: $first, after: $after, before: $before, last: $last) {
      nodes {
        id
        name
        description
        salePrice
        productImageUrl
        quantityAvailable
        images { sequence url }
      }
      totalCount
      pageInfo { hasNextPage hasPreviousPage startCursor endCursor }
    }
  }
""",
    connection_path="holdingProducts",
    detail_document="""
  query ProductDetail($id: Int!) {
    product(id: $id) {
      id
      name
      description
      salePrice
      productImageUrl
      quantityAvailable
      images { sequence url }
    }
  }
""",
    detail_path="product",
)

CATEGORIES = ResourceAdapter(
    name="categories",
    schema=CategoriesParams,
    document="""
  query HoldingBusinessCategories($first: Int, $after: String, $before: String, $last: Int) {
    holdingBusinessCategories(first: $first, after: $after, before: $before, last: $last) {
      nodes {
        id
        name
        description
        bannerImageUrl
        smallBannerImageUrl
        storeCount
      }
      totalCount
      pageInfo { hasNextPage hasPreviousPage startCursor endCursor }
    }
  }
""",
    connection_path="holdingBusinessCategories",
)

STORES = ResourceAdapter(
    name="stores",
    schema=StoresParams,
    document="""
  query HoldingStores($first: Int, $after: String, $before: String, $last: Int) {
    holdingStores(first: $first, after: $after, before: $before, last: $last) {
      nodes {
        id
        name
        description
        storeImageUrl
      }
      totalCount
      pageInfo { hasNextPage hasPreviousPage startCursor endCursor }
    }
  }
""",
    connection_path="holdingStores",
)

COLLECTIONS = ResourceAdapter(
    name="collections",
    schema=CollectionsParams,
    document="""
  query HoldingCollections($first: Int, $after: String, $before: String, $last: Int) {
    holdingCollections(first: $first, after: $after, before: $before, last: $last) {
      nodes {
        id
        name
        description
        imageUrl
        productCount
      }
      totalCount
      pageInfo { hasNextPage hasPreviousPage startCursor endCursor }
    }
  }
""",
    connection_path="holdingCollections",
)

ADAPTERS: dict[str, ResourceAdapter] = {
    adapter.name: adapter
    for adapter in (ORDERS, PRODUCTS, CATEGORIES, STORES, COLLECTIONS)
}


def get_adapter(name: str) -> ResourceAdapter:
    try:
        return ADAPTERS[name]
    except KeyError:
        raise KeyError(f"Unknown resource {name!r}; expected one of {sorted(ADAPTERS)}") from None


def seed_details(
    store: CacheStore,
    adapter: ResourceAdapter,
    connection: Connection | Mapping[str, Any],
    transform: Callable[[Any], Any] | None = None,
) -> int:
    """Pre-populate detail entries from a list page; existing details win."""
    page = Connection.coerce(connection)
    seeded = 0
    for node in page.nodes:
        if not isinstance(node, Mapping) or node.get(adapter.id_field) is None:
            continue
        value = transform(node) if transform is not None else dict(node)
        if store.seed(adapter.detail_key(node[adapter.id_field]), value):
            seeded += 1
    logger.debug("Seeded %s %s detail entries", seeded, adapter.name)
    return seeded
