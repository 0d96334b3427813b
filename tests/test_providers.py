from __future__ import annotations

import pytest

from propyield.ingest.providers import (
    ListingRecord,
    detect_provider,
    extract_city,
    fallback_listing_id,
    get_provider,
    is_valid,
    matches_location,
    parse_int,
    parse_price,
)

ZILLOW_ITEM = {
    "zpid": "2077",
    "address": {"streetAddress": "101 Pine St", "city": "Austin", "state": "TX"},
    "unformattedPrice": 300000,
    "rentZestimate": 2400,
    "beds": 3,
    "baths": 2,
    "homeType": "SINGLE_FAMILY",
    "detailUrl": "https://www.zillow.com/homedetails/2077_zpid/",
    "latLong": {"latitude": 30.27, "longitude": -97.74},
}


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        (250000, 250000.0),
        ("£350,000", 350000.0),
        ("$1.2M", 1_200_000.0),
        ("450k", 450_000.0),
        ({"amount": 199950}, 199950.0),
        ({"value": "£99,000"}, 99_000.0),
        ("POA", 0.0),
        (None, 0.0),
        (True, 0.0),
    ],
)
def test_parse_price(raw, expected) -> None:
    assert parse_price(raw) == expected


def test_parse_int() -> None:
    assert parse_int("3 bedrooms") == 3
    assert parse_int(2.0) == 2
    assert parse_int("studio") is None


def test_rightmove_item_normalized(rightmove_items) -> None:
    adapter = get_provider("rightmove")

    record = adapter.normalize(rightmove_items[0], user_id="7")

    assert record.source == "rightmove"
    assert record.source_listing_id == "rm-1"
    assert record.price == 200_000
    assert record.city == "Manchester"
    assert record.bedrooms == 3
    assert record.property_type == "terraced"
    assert record.image_url == "https://media.rightmove.test/1.jpg"
    assert record.location_lat == pytest.approx(53.48)
    assert record.estimated_rent == 800
    assert record.yield_percentage == pytest.approx(4.8)
    assert record.investment_score == "C"
    assert record.user_id == "7"


def test_rightmove_nested_address(rightmove_items) -> None:
    record = get_provider("rightmove").normalize(rightmove_items[1])

    assert record.property_address == "4 Elm Road, Leeds"
    assert record.postcode == "LS1 2AB"
    assert record.city == "Leeds"
    assert record.price == 150_000
    assert record.bedrooms == 2


def test_zillow_prefers_rent_zestimate() -> None:
    record = get_provider("zillow").normalize(ZILLOW_ITEM)

    assert record.currency == "USD"
    assert record.region == "US"
    assert record.property_address == "101 Pine St, Austin, TX"
    assert record.estimated_rent == 2_400
    assert record.source_listing_id == "2077"


def test_missing_id_falls_back_to_stable_hash() -> None:
    item = {"displayAddress": "1 High St, York", "price": 100000, "propertyUrl": "https://www.rightmove.co.uk/p/9"}
    adapter = get_provider("rightmove")

    first = adapter.normalize(item)
    second = adapter.normalize(dict(item))

    assert first.source_listing_id == second.source_listing_id
    assert first.source_listing_id == fallback_listing_id("https://www.rightmove.co.uk/p/9", "1 High St, York", 100000)


def test_unpriced_listing_keeps_zero_metrics() -> None:
    record = get_provider("zoopla").normalize({"listingId": "z1", "address": "2 Low St, Hull", "price": "POA"})

    assert record.price == 0
    assert record.estimated_rent == 0
    assert record.investment_score == "E"


@pytest.mark.parametrize(
    ("price", "address", "reason"),
    [
        (0, "1 Real Street", "Invalid price"),
        (200_000_000, "1 Real Street", "Invalid price"),
        (150_000, "Unknown", "Invalid address"),
        (150_000, "ab", "Invalid address"),
        (150_000, "", "Invalid address"),
    ],
)
def test_invalid_records(price, address, reason) -> None:
    record = ListingRecord(source="rightmove", source_listing_id="x", property_address=address, price=price)

    assert is_valid(record) == (False, reason)


def test_valid_record() -> None:
    record = ListingRecord(source="rightmove", source_listing_id="x", property_address="1 Real Street", price=150_000)

    assert is_valid(record) == (True, None)


def test_location_match_checks_address_city_and_postcode() -> None:
    record = ListingRecord(
        source="rightmove",
        source_listing_id="x",
        property_address="4 Elm Road",
        price=150_000,
        city="Leeds",
        postcode="LS1 2AB",
    )

    assert matches_location(record, None)
    assert matches_location(record, "leeds")
    assert matches_location(record, "LS1")
    assert not matches_location(record, "York")


def test_extract_city_skips_postcodes() -> None:
    assert extract_city("12 Oak Street, Manchester, M1 4AB") == "Manchester"
    assert extract_city("12 Oak Street", "Bristol") == "Bristol"
    assert extract_city("12 Oak Street") is None


def test_provider_lookup() -> None:
    assert get_provider("apify-rightmove").id == "rightmove"
    assert get_provider(" Zoopla ").id == "zoopla"
    with pytest.raises(KeyError):
        get_provider("onthemarket")


def test_detect_provider_from_url() -> None:
    assert detect_provider("https://www.zoopla.co.uk/for-sale/property/leeds/").id == "zoopla"
    assert detect_provider("https://www.idealista.com/en/venta-viviendas/madrid/").id == "idealista"
    assert detect_provider("https://example.com/listing") is None


def test_basic_mode_input_is_lighter() -> None:
    adapter = get_provider("rightmove")

    full = adapter.build_input("https://www.rightmove.co.uk/s", 25)
    basic = adapter.build_input("https://www.rightmove.co.uk/s", 25, basic_mode=True)

    assert full["fullPropertyDetails"] is True
    assert basic["fullPropertyDetails"] is False
    assert basic["maxItems"] == 25
    assert basic["startUrls"] == [{"url": "https://www.rightmove.co.uk/s"}]


# ── Heterogeneous payloads ────────────────────────────────────────────────


def test_rightmove_location_as_plain_string() -> None:
    record = get_provider("rightmove").normalize({
        "id": "rm-9",
        "displayAddress": "1 High St, Leeds",
        "price": 100000,
        "location": "Leeds",
        "address": "1 High St",
    })

    assert is_valid(record) == (True, None)
    assert record.location_lat is None
    assert record.city == "Leeds"


def test_realtor_tolerates_non_dict_nested_fields() -> None:
    record = get_provider("realtor").normalize({
        "property_id": "9001",
        "address": "7 Lake Rd, Austin, TX",
        "list_price": 410000,
        "location": "Austin, TX",
        "description": "Three bed ranch",
        "beds": 3,
    })

    assert record.bedrooms == 3
    assert record.location_lat is None
    assert record.property_type == "unknown"


def test_realtor_nested_location_still_read() -> None:
    record = get_provider("realtor").normalize({
        "property_id": "9002",
        "list_price": 350000,
        "location": {"address": {
            "line": 12, "city": "Austin", "state_code": "TX", "postal_code": 78701,
            "coordinate": {"lat": 30.2, "lon": -97.7},
        }},
        "description": {"beds": "4", "baths": 2, "type": "single_family"},
    })

    assert record.property_address == "12, Austin, TX"
    assert record.postcode == "78701"
    assert record.bedrooms == 4
    assert record.location_lng == -97.7


def test_numeric_zipcode_is_stored_as_text_and_filterable() -> None:
    record = get_provider("zillow").normalize({**ZILLOW_ITEM, "zipcode": 78701, "city": None})

    assert record.postcode == "78701"
    assert matches_location(record, "austin")
    assert matches_location(record, "78701")
    assert not matches_location(record, "dallas")


@pytest.mark.parametrize("beds", [float("nan"), float("inf"), {"count": 3}, [3]])
def test_unusable_bedroom_values_become_none(beds) -> None:
    record = get_provider("zillow").normalize({**ZILLOW_ITEM, "beds": beds})

    assert record.bedrooms is None


def test_non_finite_price_is_treated_as_unpriced() -> None:
    record = get_provider("zillow").normalize({**ZILLOW_ITEM, "unformattedPrice": float("inf")})

    assert record.price == 0
    assert is_valid(record) == (False, "Invalid price")


def test_nested_values_in_scalar_fields_are_dropped() -> None:
    record = get_provider("idealista").normalize({
        "propertyCode": {"id": 1},
        "address": "Calle Mayor 5, Madrid",
        "price": 250000,
        "postalCode": {"code": "28013"},
        "municipality": ["Madrid"],
        "latitude": "not a number",
    })

    assert record.postcode is None
    assert record.city == "Madrid"
    assert record.location_lat is None
    assert len(record.source_listing_id) == 16
