"""
Review ledger: product reviews and the rating aggregate stored on each product.

Creating a review and refreshing the product's rating/review_count form one
unit. The aggregate is read after the review is inserted and written back
with a compare-and-swap on the product's rating_version, so two reviews
landing back to back cannot overwrite each other's count. If the aggregate
cannot be written the review is deleted again and the aggregate refreshed
without it.
"""

from typing import Callable, List, Tuple

import structlog
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import config
from catalog import CatalogStore
from database import NEWEST_FIRST, create_document, get_document, get_documents, storage_errors, utcnow
from errors import ConflictError, CraftNestError, NotFoundError, ValidationError
from identity import IdentityProvider
from money import to_decimal, to_float
from schemas import Review, ReviewCreate

logger = structlog.get_logger(__name__)

ALREADY_REVIEWED = "You have already reviewed this product"


class ReviewLedger:
    collection = "review"

    def __init__(
        self,
        db: Database,
        catalog: CatalogStore,
        identity: IdentityProvider,
        min_comment_length: int = config.REVIEW_MIN_COMMENT_LENGTH,
        max_attempts: int = config.AGGREGATE_MAX_ATTEMPTS,
        clock: Callable = utcnow,
    ):
        self.db = db
        self.catalog = catalog
        self.identity = identity
        self.min_comment_length = min_comment_length
        self.max_attempts = max_attempts
        self.clock = clock

    def validate(self, review: ReviewCreate) -> str:
        """Check rating and comment; returns the trimmed comment."""
        if not 1 <= review.rating <= 5:
            raise ValidationError("Rating must be between 1 and 5", field="rating")
        comment = (review.comment or "").strip()
        if len(comment) < self.min_comment_length:
            raise ValidationError(
                f"Comment must be at least {self.min_comment_length} characters", field="comment"
            )
        return comment

    def create(self, review: ReviewCreate) -> Review:
        comment = self.validate(review)
        self.catalog.get_by_id(review.product_id)
        reviewer = self.identity.get(review.customer_id)

        with storage_errors("review lookup"):
            previous = self.db[self.collection].find_one(
                {"product_id": review.product_id, "customer_id": review.customer_id}, {"_id": 1}
            )
        if previous is not None:
            raise ValidationError(ALREADY_REVIEWED, field="product_id")

        record = Review(
            **{
                **review.model_dump(),
                "customer_name": reviewer.name,
                "comment": comment,
                "created_at": self.clock(),
            }
        )
        try:
            review_id = create_document(self.db, self.collection, record)
        except DuplicateKeyError as e:
            raise ValidationError(ALREADY_REVIEWED, field="product_id") from e

        try:
            rating, count = self.recompute_aggregate(review.product_id)
        except Exception as e:
            logger.error(
                "review_rolled_back",
                review_id=review_id,
                product_id=review.product_id,
                error=str(e),
            )
            with storage_errors("review rollback"):
                self.db[self.collection].delete_one({"_id": review_id})
            self._repair_aggregate(review.product_id)
            raise

        logger.info(
            "review_created",
            review_id=review_id,
            product_id=review.product_id,
            rating=review.rating,
            product_rating=rating,
            review_count=count,
        )
        return self.get(review_id)

    def recompute_aggregate(self, product_id: str) -> Tuple[float, int]:
        """Refresh rating/review_count on the product from every stored review."""
        for attempt in range(1, self.max_attempts + 1):
            # version first, then the stats: a write that wins the swap has
            # seen every review inserted before the previous winner wrote
            version = self.catalog.aggregate_version(product_id)
            rating, count = self.stats(product_id)
            if self.catalog.update_aggregate(product_id, rating, count, version):
                return rating, count
            logger.warning("product_rating_write_conflict", product_id=product_id, attempt=attempt)
        raise ConflictError(f"Could not update the rating of product {product_id}", field="product_id")

    def _repair_aggregate(self, product_id: str) -> None:
        # a concurrent review may have counted the one just deleted
        try:
            self.recompute_aggregate(product_id)
        except CraftNestError as e:
            logger.warning("product_rating_repair_failed", product_id=product_id, error=e.message)

    def stats(self, product_id: str) -> Tuple[float, int]:
        with storage_errors("review aggregation"):
            rows = list(
                self.db[self.collection].aggregate(
                    [
                        {"$match": {"product_id": product_id}},
                        {"$group": {"_id": None, "avg": {"$avg": "$rating"}, "count": {"$sum": 1}}},
                    ]
                )
            )
        if not rows or not rows[0]["count"]:
            return 0.0, 0
        return to_float(to_decimal(rows[0]["avg"])), int(rows[0]["count"])

    def get(self, review_id: str) -> Review:
        doc = get_document(self.db, self.collection, review_id)
        if not doc:
            raise NotFoundError(f"Review {review_id} not found", field="review_id")
        return Review(**doc)

    def get_by_product(self, product_id: str) -> List[Review]:
        docs = get_documents(self.db, self.collection, {"product_id": product_id}, sort=NEWEST_FIRST)
        return [Review(**d) for d in docs]

    def get_by_customer(self, customer_id: str) -> List[Review]:
        docs = get_documents(self.db, self.collection, {"customer_id": customer_id}, sort=NEWEST_FIRST)
        return [Review(**d) for d in docs]
