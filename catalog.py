"""
Catalog store: product records as the ordering and review workflows see them.

Name, price, stock and images are set when a vendor lists a product and are
never touched here afterwards; the only mutations are admin approval and the
rating aggregate written by the review ledger.
"""

from typing import List, Optional

import structlog
from pymongo.database import Database

from database import NEWEST_FIRST, create_document, get_document, get_documents, storage_errors
from errors import NotFoundError
from schemas import Category, Product, ProductCreate

logger = structlog.get_logger(__name__)


class CatalogStore:
    collection = "product"

    def __init__(self, db: Database):
        self.db = db

    def create(self, product: ProductCreate, vendor_id: str, vendor_name: str) -> Product:
        record = Product(
            **product.model_dump(),
            vendor_id=vendor_id,
            vendor_name=vendor_name,
            rating=0,
            review_count=0,
            approved=False,
            featured=False,
        )
        product_id = create_document(self.db, self.collection, record)
        logger.info("product_created", product_id=product_id, vendor_id=vendor_id)
        return self.get_by_id(product_id)

    def get_by_id(self, product_id: str) -> Product:
        doc = get_document(self.db, self.collection, product_id)
        if not doc:
            raise NotFoundError(f"Product {product_id} not found", field="product_id")
        return Product(**doc)

    def get_by_vendor(self, vendor_id: str) -> List[Product]:
        return self.list(vendor_id=vendor_id)

    def list(
        self,
        approved: Optional[bool] = None,
        category: Optional[Category] = None,
        vendor_id: Optional[str] = None,
        featured: Optional[bool] = None,
        q: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Product]:
        query = {}
        if approved is not None:
            query["approved"] = approved
        if category:
            query["category"] = category.value
        if vendor_id:
            query["vendor_id"] = vendor_id
        if featured is not None:
            query["featured"] = featured
        if q:
            query["$or"] = [
                {"name": {"$regex": q, "$options": "i"}},
                {"description": {"$regex": q, "$options": "i"}},
            ]
        docs = get_documents(self.db, self.collection, query, limit, sort=NEWEST_FIRST)
        return [Product(**d) for d in docs]

    def set_approval(self, product_id: str, approved: bool) -> Product:
        with storage_errors("product approval"):
            res = self.db[self.collection].update_one({"_id": product_id}, {"$set": {"approved": approved}})
        if res.matched_count == 0:
            raise NotFoundError(f"Product {product_id} not found", field="product_id")
        logger.info("product_approval_set", product_id=product_id, approved=approved)
        return self.get_by_id(product_id)

    def aggregate_version(self, product_id: str) -> int:
        with storage_errors("product read"):
            doc = self.db[self.collection].find_one({"_id": product_id}, {"rating_version": 1})
        if not doc:
            raise NotFoundError(f"Product {product_id} not found", field="product_id")
        return doc.get("rating_version", 0)

    def update_aggregate(self, product_id: str, rating: float, review_count: int, expected_version: int) -> bool:
        """Write rating/review_count if nobody else wrote since `expected_version` was read.

        Returns False when the version moved on; raises NotFoundError when the
        product is gone.
        """
        version_filter = {"$in": [expected_version, None]} if expected_version == 0 else expected_version
        with storage_errors("product aggregate update"):
            res = self.db[self.collection].update_one(
                {"_id": product_id, "rating_version": version_filter},
                {
                    "$set": {"rating": rating, "review_count": review_count},
                    "$inc": {"rating_version": 1},
                },
            )
            if res.matched_count == 0 and self.db[self.collection].count_documents({"_id": product_id}) == 0:
                raise NotFoundError(f"Product {product_id} not found", field="product_id")
        return res.matched_count == 1
