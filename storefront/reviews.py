"""Product reviews: paged listing with a rating breakdown, and mutations
guarded by the reviewer's email address."""

import logging
from typing import Dict, Iterable, Optional

from .errors import AuthorizationError, NotFoundError, ValidationError
from .utils import (
    clean_text,
    isoformat,
    normalize_email,
    page_count,
    safe_float,
    safe_positive_int,
    to_object_id,
    utcnow,
)

logger = logging.getLogger(__name__)

RATING_VALUES = (1, 2, 3, 4, 5)
DEFAULT_REVIEW_PAGE_SIZE = 5
MAX_REVIEW_PAGE_SIZE = 50


def parse_rating(value) -> int:
    numeric = safe_float(value, None)
    if numeric is None or numeric != int(numeric) or int(numeric) not in RATING_VALUES:
        raise ValidationError("Rating must be between 1 and 5")
    return int(numeric)


def summarize_ratings(ratings: Iterable[int]) -> Dict[str, object]:
    breakdown = {str(value): 0 for value in RATING_VALUES}
    count = 0
    total_rating = 0
    for rating in ratings:
        key = str(rating)
        if key not in breakdown:
            continue
        breakdown[key] += 1
        total_rating += rating
        count += 1

    average = round(total_rating / count, 1) if count else 0
    return {"breakdown": breakdown, "averageRating": average, "count": count}


def fetch_product_or_404(db, product_id) -> Dict:
    object_id = to_object_id(product_id)
    product_document = db.products.find_one({"_id": object_id}) if object_id else None
    if not product_document:
        raise NotFoundError("Product")
    return product_document


def fetch_review_or_404(db, product_id, review_id) -> Dict:
    review_object_id = to_object_id(review_id)
    product_object_id = to_object_id(product_id)
    review_document = None
    if review_object_id and product_object_id:
        review_document = db.reviews.find_one(
            {"_id": review_object_id, "product": product_object_id}
        )
    if not review_document:
        raise NotFoundError("Review")
    return review_document


def ensure_review_owner(review_document: Dict, email, action: str) -> None:
    caller_email = normalize_email(email)
    if not caller_email:
        raise ValidationError(f"Email is required to {action} review")
    if normalize_email(review_document.get("email")) != caller_email:
        raise AuthorizationError(f"You can only {action} your own review")


def list_reviews(
    db,
    product_id,
    page=1,
    limit=DEFAULT_REVIEW_PAGE_SIZE,
    sort: str = "newest",
    rating=None,
) -> Dict[str, object]:
    product_object_id = to_object_id(product_id)
    if not product_object_id:
        raise NotFoundError("Product")

    current_page = safe_positive_int(page, 1)
    page_size = min(
        safe_positive_int(limit, 0) or DEFAULT_REVIEW_PAGE_SIZE, MAX_REVIEW_PAGE_SIZE
    )

    query: Dict[str, object] = {"product": product_object_id}
    if rating not in (None, ""):
        query["rating"] = parse_rating(rating)

    if sort == "highest":
        sort_order = [("rating", -1), ("created_at", -1), ("_id", -1)]
    else:
        sort_order = [("created_at", -1), ("_id", -1)]

    total = db.reviews.count_documents(query)
    cursor = (
        db.reviews.find(query)
        .sort(sort_order)
        .skip((current_page - 1) * page_size)
        .limit(page_size)
    )
    reviews = [serialize_review(document) for document in cursor]

    # The breakdown always covers every review of the product, not the filtered page.
    all_ratings = (
        document.get("rating")
        for document in db.reviews.find(
            {"product": product_object_id}, {"rating": 1}
        )
    )
    summary = summarize_ratings(all_ratings)

    return {
        "reviews": reviews,
        "total": total,
        "page": current_page,
        "pages": page_count(total, page_size),
        "breakdown": summary["breakdown"],
        "averageRating": summary["averageRating"],
    }


def create_review(db, product_id, payload: Dict) -> Dict:
    payload = payload if isinstance(payload, dict) else {}
    name = clean_text(payload.get("name"))
    email = normalize_email(payload.get("email"))
    comment = clean_text(payload.get("comment"))
    raw_rating = payload.get("rating")

    if not name or not email or raw_rating in (None, "") or not comment:
        raise ValidationError("Name, email, rating, and comment are required")

    rating = parse_rating(raw_rating)
    product_document = fetch_product_or_404(db, product_id)

    timestamp = utcnow()
    review_document = {
        "product": product_document["_id"],
        "name": name,
        "email": email,
        "rating": rating,
        "comment": comment,
        "verified_purchase": False,
        "replies": [],
        "created_at": timestamp,
        "updated_at": timestamp,
    }
    insert_result = db.reviews.insert_one(review_document)
    review_document["_id"] = insert_result.inserted_id
    logger.info("Review %s added to product %s", insert_result.inserted_id, product_id)
    return review_document


def edit_review(db, product_id, review_id, payload: Dict) -> Dict:
    payload = payload if isinstance(payload, dict) else {}
    review_document = fetch_review_or_404(db, product_id, review_id)
    ensure_review_owner(review_document, payload.get("email"), "edit")

    updates: Dict[str, object] = {}
    if payload.get("name") is not None:
        updates["name"] = clean_text(payload.get("name"))
    if payload.get("rating") is not None:
        updates["rating"] = parse_rating(payload.get("rating"))
    if payload.get("comment") is not None:
        updates["comment"] = clean_text(payload.get("comment"))
    updates["updated_at"] = utcnow()

    db.reviews.update_one({"_id": review_document["_id"]}, {"$set": updates})
    return db.reviews.find_one({"_id": review_document["_id"]})


def delete_review(db, product_id, review_id, email: Optional[str]) -> None:
    review_document = fetch_review_or_404(db, product_id, review_id)
    ensure_review_owner(review_document, email, "delete")
    db.reviews.delete_one({"_id": review_document["_id"]})
    logger.info("Review %s deleted by its author", review_document["_id"])


def add_review_reply(db, product_id, review_id, comment, author: str = "Admin") -> Dict:
    comment = clean_text(comment)
    if not comment:
        raise ValidationError("Comment is required")

    review_document = fetch_review_or_404(db, product_id, review_id)
    reply = {
        "name": author,
        "comment": comment,
        "isAdmin": True,
        "created_at": utcnow(),
    }
    db.reviews.update_one(
        {"_id": review_document["_id"]},
        {"$push": {"replies": reply}, "$set": {"updated_at": utcnow()}},
    )
    return db.reviews.find_one({"_id": review_document["_id"]})


def serialize_review(review_document) -> Optional[Dict[str, object]]:
    if not review_document:
        return None

    replies = []
    for reply in review_document.get("replies") or []:
        if not isinstance(reply, dict):
            continue
        replies.append(
            {
                "name": reply.get("name") or "",
                "comment": reply.get("comment") or "",
                "isAdmin": bool(reply.get("isAdmin")),
                "createdAt": isoformat(reply.get("created_at")),
            }
        )

    return {
        "id": str(review_document.get("_id", "")),
        "product": str(review_document.get("product", "")),
        "name": review_document.get("name") or "",
        "email": review_document.get("email") or "",
        "rating": review_document.get("rating"),
        "comment": review_document.get("comment") or "",
        "verifiedPurchase": bool(review_document.get("verified_purchase")),
        "replies": replies,
        "createdAt": isoformat(review_document.get("created_at")),
        "updatedAt": isoformat(review_document.get("updated_at")),
    }
