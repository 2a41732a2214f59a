import json

from shop_agent.tools.definitions import (
    AuthRequiredOutcome,
    ErrorOutcome,
    RawToolResponse,
    SuccessOutcome,
)
from shop_agent.tools.normalizer import (
    PRICE_UNAVAILABLE,
    SchemaHint,
    classify,
    extract_structured,
    format_product,
    parse_payload,
)


def _success(payload):
    text = payload if isinstance(payload, str) else json.dumps(payload)
    return SuccessOutcome(payload={"content": [{"type": "text", "text": text}]})


def test_classify_auth_markers():
    assert isinstance(classify(RawToolResponse(status_code=403)), AuthRequiredOutcome)
    body = {"error": {"type": "auth_required", "data": "login"}}
    outcome = classify(RawToolResponse(status_code=200, body=body))
    assert isinstance(outcome, AuthRequiredOutcome)
    assert outcome.challenge == "login"


def test_classify_generic_errors():
    assert isinstance(classify(RawToolResponse(status_code=0, transport_error="timeout")), ErrorOutcome)
    assert isinstance(classify(RawToolResponse(status_code=500, body={})), ErrorOutcome)
    err = classify(RawToolResponse(status_code=200, body={"result": {"isError": True, "content": "bad"}}))
    assert isinstance(err, ErrorOutcome) and err.detail == "bad"
    assert isinstance(classify(RawToolResponse(status_code=200, body={"result": []})), ErrorOutcome)


def test_extract_products_caps_and_keeps_order():
    products = [{"product_id": f"p{i}", "title": f"T{i}", "price_range": {"min": str(i), "currency": "EUR"}} for i in range(5)]
    found = extract_structured(_success({"products": products}), SchemaHint.PRODUCT_SEARCH, limit=3)
    assert [p["id"] for p in found] == ["p0", "p1", "p2"]
    assert found[1]["price"] == "EUR 1"


def test_extract_products_skips_non_objects_before_capping():
    products = ["junk", {"product_id": "a"}, None, {"product_id": "b"}, {"product_id": "c"}]
    found = extract_structured(_success({"products": products}), SchemaHint.PRODUCT_SEARCH, limit=2)
    assert [p["id"] for p in found] == ["a", "b"]


def test_format_product_fallbacks():
    p = format_product({"variants": [{"price": "9.90", "currency": "EUR"}]})
    assert p["price"] == "EUR 9.90"
    assert p["title"] == "Produit"
    assert p["id"].startswith("product-")
    assert format_product({})["price"] == PRICE_UNAVAILABLE


def test_format_product_tolerates_odd_shapes():
    assert format_product({"price_range": "12.00 EUR"})["price"] == PRICE_UNAVAILABLE
    assert format_product({"variants": ["x"]})["price"] == PRICE_UNAVAILABLE
    assert format_product({"variants": "x"})["price"] == PRICE_UNAVAILABLE
    p = format_product({"product_id": 42, "title": 7, "url": ["nope"]})
    assert p["id"] == "42"
    assert p["title"] == "7"
    assert p["url"] == ""

    found = extract_structured(
        _success({"products": [{"price_range": "12.00 EUR"}, {"variants": ["x"]}]}),
        SchemaHint.PRODUCT_SEARCH,
        limit=5,
    )
    assert [p["price"] for p in found] == [PRICE_UNAVAILABLE, PRICE_UNAVAILABLE]


def test_malformed_payload_yields_empty():
    assert extract_structured(_success("not json"), SchemaHint.PRODUCT_SEARCH) == []
    assert extract_structured(_success("[1, 2]"), SchemaHint.PRODUCT_DETAILS) == {}
    assert parse_payload(ErrorOutcome(detail="x")) == {}


def test_product_details_embedded_url():
    product = {"title": "Chaise", "embedded_url": "https://shop.test/embed/1"}
    details = extract_structured(_success({"product": product}), SchemaHint.PRODUCT_DETAILS)
    assert details["embedded_url"] == "https://shop.test/embed/1"
