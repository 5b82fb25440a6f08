import pytest

from catalog import CatalogStore
from errors import ConflictError, NotFoundError, StorageError, ValidationError
from reviews import ReviewLedger
from schemas import Role, ReviewCreate


def _review(product, customer, rating=5, comment="Beautiful glaze, sturdy handle"):
    return ReviewCreate(
        product_id=product.id,
        customer_id=customer.id,
        customer_name=customer.name,
        rating=rating,
        comment=comment,
    )


@pytest.fixture()
def product(vendor, make_product):
    return make_product(vendor, name="Speckled Vase", price=48.0)


def test_rating_tracks_every_review(reviews, catalog, product, customer, make_user):
    assert catalog.get_by_id(product.id).rating == 0
    assert catalog.get_by_id(product.id).review_count == 0

    review = reviews.create(_review(product, customer, rating=5))
    after_first = catalog.get_by_id(product.id)
    assert review.id
    assert (after_first.rating, after_first.review_count) == (5.0, 1)

    reviews.create(_review(product, make_user("Second Buyer"), rating=3))
    after_second = catalog.get_by_id(product.id)
    assert (after_second.rating, after_second.review_count) == (4.0, 2)


def test_back_to_back_reviews_keep_an_exact_mean(reviews, catalog, product, make_user):
    ratings = [5, 4, 4, 1, 2, 5]
    for i, rating in enumerate(ratings):
        reviews.create(_review(product, make_user(f"Buyer {i}"), rating=rating))

    stored = catalog.get_by_id(product.id)
    assert stored.review_count == len(ratings)
    assert stored.rating == round(sum(ratings) / len(ratings), 2)
    assert stored.rating_version == len(ratings)


def test_mean_is_rounded_to_cents(reviews, catalog, product, make_user):
    for i, rating in enumerate([5, 4, 4]):
        reviews.create(_review(product, make_user(f"Buyer {i}"), rating=rating))

    assert catalog.get_by_id(product.id).rating == 4.33


@pytest.mark.parametrize("rating", [0, 6, -1])
def test_rating_out_of_range(reviews, product, customer, rating):
    with pytest.raises(ValidationError) as exc:
        reviews.create(_review(product, customer, rating=rating))
    assert exc.value.field == "rating"


@pytest.mark.parametrize("comment", ["Meh", "", "   ok   "])
def test_comment_too_short(reviews, catalog, product, customer, comment):
    with pytest.raises(ValidationError) as exc:
        reviews.create(_review(product, customer, comment=comment))

    assert exc.value.field == "comment"
    assert catalog.get_by_id(product.id).review_count == 0


def test_minimum_comment_length_is_configurable(db, catalog, identity, product, customer):
    strict = ReviewLedger(db, catalog, identity, min_comment_length=20)

    with pytest.raises(ValidationError):
        strict.create(_review(product, customer, comment="Lovely little vase"))


def test_unknown_product(reviews, customer):
    class Missing:
        id = "no-such-product"

    with pytest.raises(NotFoundError) as exc:
        reviews.create(_review(Missing, customer))
    assert exc.value.field == "product_id"


def test_unknown_customer(reviews, product):
    class Stranger:
        id = "no-such-user"
        name = "Stranger"

    with pytest.raises(NotFoundError):
        reviews.create(_review(product, Stranger))


def test_one_review_per_customer_and_product(reviews, catalog, product, customer):
    reviews.create(_review(product, customer, rating=4))

    with pytest.raises(ValidationError):
        reviews.create(_review(product, customer, rating=1))

    stored = catalog.get_by_id(product.id)
    assert (stored.rating, stored.review_count) == (4.0, 1)


def test_comment_is_stored_trimmed(reviews, product, customer):
    review = reviews.create(_review(product, customer, comment="  Lovely vase  "))
    assert review.comment == "Lovely vase"


def test_reviews_listed_newest_first(reviews, product, vendor, make_product, make_user):
    other_product = make_product(vendor, name="Tea Bowl")
    a, b = make_user("A Buyer"), make_user("B Buyer")
    first = reviews.create(_review(product, a))
    second = reviews.create(_review(other_product, a))
    third = reviews.create(_review(product, b))

    assert [r.id for r in reviews.get_by_product(product.id)] == [third.id, first.id]
    assert [r.id for r in reviews.get_by_customer(a.id)] == [second.id, first.id]


def test_interleaved_review_is_not_lost(monkeypatch, db, reviews, catalog, identity, product, make_user):
    """A second review commits between our aggregate read and our write."""
    other_ledger = ReviewLedger(db, catalog, identity)
    late_buyer = make_user("Late Buyer")
    real_stats = reviews.stats
    calls = []

    def stats_with_interleaving(product_id):
        result = real_stats(product_id)
        calls.append(result)
        if len(calls) == 1:
            other_ledger.create(_review(product, late_buyer, rating=1))
        return result

    monkeypatch.setattr(reviews, "stats", stats_with_interleaving)

    reviews.create(_review(product, make_user("First Buyer"), rating=5))

    stored = catalog.get_by_id(product.id)
    assert (stored.rating, stored.review_count) == (3.0, 2)
    assert calls[0] == (5.0, 1)
    assert len(calls) == 2


def test_failed_aggregate_write_rolls_back_the_review(monkeypatch, db, reviews, catalog, product, customer):
    def broken(*args, **kwargs):
        raise StorageError("write concern timeout")

    monkeypatch.setattr(catalog, "update_aggregate", broken)

    with pytest.raises(StorageError):
        reviews.create(_review(product, customer))

    assert db["review"].count_documents({}) == 0
    stored = catalog.get_by_id(product.id)
    assert (stored.rating, stored.review_count) == (0, 0)


def test_exhausted_swaps_roll_back_the_review(monkeypatch, db, reviews, catalog, product, customer):
    monkeypatch.setattr(catalog, "update_aggregate", lambda *args, **kwargs: False)

    with pytest.raises(ConflictError):
        reviews.create(_review(product, customer))

    assert db["review"].count_documents({}) == 0


def test_rolled_back_customer_can_review_again(monkeypatch, reviews, catalog, product, customer):
    real_update = catalog.update_aggregate
    monkeypatch.setattr(catalog, "update_aggregate", lambda *args, **kwargs: False)
    with pytest.raises(ConflictError):
        reviews.create(_review(product, customer))

    monkeypatch.setattr(catalog, "update_aggregate", real_update)
    reviews.create(_review(product, customer, rating=2))

    assert catalog.get_by_id(product.id).rating == 2.0


def test_recompute_repairs_a_drifted_aggregate(db, reviews, catalog, product, customer):
    reviews.create(_review(product, customer, rating=4))
    db["product"].update_one({"_id": product.id}, {"$set": {"rating": 1.0, "review_count": 9}})

    assert reviews.recompute_aggregate(product.id) == (4.0, 1)
    assert catalog.get_by_id(product.id).review_count == 1


def test_reviewer_only_needs_to_exist(reviews, product, make_user):
    admin = make_user("Ada Admin", Role.ADMIN)
    assert reviews.create(_review(product, admin)).customer_id == admin.id


def test_rollback_refreshes_an_aggregate_that_counted_the_deleted_review(
    monkeypatch, db, reviews, catalog, identity, product, make_user
):
    """Another review lands and wins its write while ours is still in flight."""
    other_ledger = ReviewLedger(db, CatalogStore(db), identity)
    late_buyer = make_user("Late Buyer")
    real_update = catalog.update_aggregate
    calls = []

    def fails_after_interleaving(*args, **kwargs):
        calls.append(args)
        if len(calls) == 1:
            other_ledger.create(_review(product, late_buyer, rating=1))
            raise StorageError("write concern timeout")
        return real_update(*args, **kwargs)

    monkeypatch.setattr(catalog, "update_aggregate", fails_after_interleaving)

    with pytest.raises(StorageError):
        reviews.create(_review(product, make_user("First Buyer"), rating=5))

    assert [r.rating for r in reviews.get_by_product(product.id)] == [1]
    stored = catalog.get_by_id(product.id)
    assert (stored.rating, stored.review_count) == (1.0, 1)


def test_reviewer_name_comes_from_the_user_record(reviews, product, customer):
    submitted = _review(product, customer).model_copy(update={"customer_name": "Somebody Else"})

    assert reviews.create(submitted).customer_name == customer.name
