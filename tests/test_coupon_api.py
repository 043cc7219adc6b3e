from datetime import timedelta
from decimal import Decimal

from storefront.models.coupon import DiscountType

API = "/api/v1/coupons"


async def test_list_coupons(client, make_coupon, clock):
    await make_coupon(code="ANY")
    await make_coupon(code="BIG", minimum_purchase_amount="500.00")
    await make_coupon(code="OLD", valid_until=clock.now() - timedelta(minutes=1))

    response = await client.get(API)
    assert response.status_code == 200
    assert {c["code"] for c in response.json()} == {"ANY", "BIG"}

    response = await client.get(API, params={"cart_total": "100.00"})
    assert [c["code"] for c in response.json()] == ["ANY"]


async def test_get_coupon_by_code(client, make_coupon):
    await make_coupon(code="SAVE10")

    response = await client.get(f"{API}/save10")
    assert response.status_code == 200
    assert response.json()["code"] == "SAVE10"

    response = await client.get(f"{API}/MISSING")
    assert response.status_code == 404
    assert response.json()["detail"]["code"] == "COUPON_NOT_FOUND"


async def test_validate_coupon(client, make_coupon):
    await make_coupon(code="WELCOME10", minimum_purchase_amount="100.00")

    response = await client.post(f"{API}/validate", json={"code": "welcome10", "cart_total": "150.00"})
    body = response.json()
    assert response.status_code == 200
    assert body["valid"] is True
    assert Decimal(body["discount_amount"]) == Decimal("15.00")
    assert body["coupon"]["code"] == "WELCOME10"

    response = await client.post(f"{API}/validate", json={"code": "WELCOME10", "cart_total": "50.00"})
    assert response.json()["valid"] is False

    response = await client.post(f"{API}/validate", json={"code": "NOPE"})
    assert response.status_code == 200
    assert response.json() == {
        "valid": False,
        "code": "NOPE",
        "discount_amount": "0.00",
        "message": "Invalid coupon code",
        "coupon": None,
    }


async def test_apply_requires_login(client, make_coupon):
    await make_coupon(code="SAVE10")

    response = await client.post(f"{API}/apply", json={"code": "SAVE10", "cart_total": "50.00"})

    assert response.status_code == 401
    assert response.json()["detail"]["code"] == "LOGIN_REQUIRED"


async def test_apply_and_remove(client, make_coupon, auth_headers):
    await make_coupon(code="FLAT20", discount_type=DiscountType.FIXED_AMOUNT, discount_value="20.00")
    headers = auth_headers(7)

    response = await client.post(
        f"{API}/apply", json={"code": "flat20", "cart_total": "150.00"}, headers=headers
    )
    assert response.status_code == 201
    usage = response.json()
    assert usage["status"] == "PENDING"
    assert usage["coupon_code"] == "FLAT20"
    assert usage["user_id"] == 7
    assert Decimal(usage["discount_amount"]) == Decimal("20.00")
    assert Decimal(usage["order_total_after_discount"]) == Decimal("130.00")

    response = await client.get(f"{API}/pending", headers=headers)
    assert response.json()["id"] == usage["id"]

    response = await client.post(
        f"{API}/apply", json={"code": "FLAT20", "cart_total": "150.00"}, headers=headers
    )
    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "ALREADY_APPLIED"

    # Another customer cannot remove it
    response = await client.delete(f"{API}/usages/{usage['id']}", headers=auth_headers(8))
    assert response.status_code == 404

    response = await client.delete(f"{API}/usages/{usage['id']}", headers=headers)
    assert response.status_code == 200
    assert response.json()["status"] == "CANCELLED"

    response = await client.get(f"{API}/pending", headers=headers)
    assert response.json() is None


async def test_remove_requires_login(client):
    response = await client.delete(f"{API}/usages/00000000-0000-0000-0000-000000000000")
    assert response.status_code == 401


async def test_apply_minimum_not_met(client, make_coupon, auth_headers):
    await make_coupon(code="BIG", minimum_purchase_amount="500.00")

    response = await client.post(
        f"{API}/apply", json={"code": "BIG", "cart_total": "100.00"}, headers=auth_headers(1)
    )

    assert response.status_code == 409
    detail = response.json()["detail"]
    assert detail["code"] == "MINIMUM_PURCHASE_NOT_MET"
    assert detail["minimum_purchase_amount"] == "500.00"


async def test_apply_rejects_invalid_cart_total(client, make_coupon, auth_headers):
    await make_coupon(code="SAVE10")

    response = await client.post(
        f"{API}/apply", json={"code": "SAVE10", "cart_total": "0"}, headers=auth_headers(1)
    )

    assert response.status_code == 422


async def test_invalid_bearer_token_is_guest(client, make_coupon):
    await make_coupon(code="SAVE10")

    response = await client.post(
        f"{API}/apply",
        json={"code": "SAVE10", "cart_total": "50.00"},
        headers={"Authorization": "Bearer not-a-jwt"},
    )

    assert response.status_code == 401
