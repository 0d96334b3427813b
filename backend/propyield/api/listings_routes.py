"""Listing browse routes — list / detail."""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query

from .. import store
from ..auth import UserRecord, get_current_user
from ..schemas import ListingResponse, ListingsPage

router = APIRouter(prefix="/api/v1/listings", tags=["listings"])


@router.get("", response_model=ListingsPage)
def list_listings(
    source: str | None = None,
    city: str | None = None,
    min_yield: float | None = Query(None, ge=0),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    _user: UserRecord = Depends(get_current_user),
) -> ListingsPage:
    rows = store.list_listings(source=source, city=city, min_yield=min_yield, limit=limit, offset=offset)
    return ListingsPage(
        items=[ListingResponse(**row) for row in rows],
        count=len(rows),
        limit=limit,
        offset=offset,
    )


@router.get("/{listing_id}", response_model=ListingResponse)
def get_listing(
    listing_id: int,
    _user: UserRecord = Depends(get_current_user),
) -> ListingResponse:
    listing = store.get_listing(listing_id)
    if listing is None:
        raise HTTPException(404, detail={"error": "Listing not found", "code": "ERR_LISTING_NOT_FOUND"})
    return ListingResponse(**listing)
