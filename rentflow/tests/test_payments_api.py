from rentpay.services.providers import reset_payment_provider
from rentpay.services.providers.errors import PaymentDeclinedError, ProviderTimeoutError


def _pay(client, customer, pm, account, amount="1800.00", headers=None):
    return client.post(
        "/api/payments/pay",
        json={
            "customer_id": customer.id,
            "payment_method_id": pm.id,
            "connected_account_id": account.id,
            "amount": amount,
        },
        headers=headers or {},
    )


def test_health(client):
    r = client.get("/__health__")
    assert r.status_code == 200


def test_pay_now_card_succeeds(client, customer, card_method, active_account):
    r = _pay(client, customer, card_method, active_account, amount="1000.00")
    assert r.status_code == 201
    body = r.get_json()
    assert body["status"] == "succeeded"
    assert body["platform_fee"] == "29.00"
    assert body["net_amount"] == "971.00"


def test_pay_now_ach_is_accepted_while_processing(client, provider, customer, bank_method, active_account):
    provider.outcomes["pm_bank_1"] = ["processing"]
    r = _pay(client, customer, bank_method, active_account)
    assert r.status_code == 202
    assert r.get_json()["status"] == "processing"


def test_pay_now_declined_is_402(client, provider, customer, card_method, active_account):
    provider.outcomes["pm_card_1"] = [PaymentDeclinedError("Your card was declined.", decline_code="do_not_honor")]
    r = _pay(client, customer, card_method, active_account)
    assert r.status_code == 402
    assert r.get_json()["error"] == "declined"
    assert r.get_json()["decline_code"] == "do_not_honor"


def test_pay_now_to_unready_account_is_409(client, provider, customer, bank_method, make_account):
    account = make_account("landlord-2", status="onboarding")
    r = _pay(client, customer, bank_method, account)
    assert r.status_code == 409
    assert r.get_json()["requirements"] == ["external_account"]
    assert provider.count("create_payment") == 0


def test_pay_now_timeout_is_accepted_as_unknown(client, provider, customer, bank_method, active_account):
    provider.outcomes["pm_bank_1"] = [ProviderTimeoutError()]
    r = _pay(client, customer, bank_method, active_account)
    assert r.status_code == 202
    assert r.get_json()["status_unknown"] is True


def test_pay_now_idempotency_header(client, provider, customer, bank_method, active_account):
    headers = {"Idempotency-Key": "checkout-123"}
    first = _pay(client, customer, bank_method, active_account, headers=headers)
    second = _pay(client, customer, bank_method, active_account, headers=headers)
    assert first.get_json()["id"] == second.get_json()["id"]
    assert provider.count("create_payment") == 1


def test_pay_now_validation(client, customer, bank_method, active_account):
    r = client.post("/api/payments/pay", json={"customer_id": customer.id})
    assert r.status_code == 400
    assert "amount" in r.get_json()["message"]

    r = _pay(client, customer, bank_method, active_account, amount="-1")
    assert r.status_code == 400


def test_unknown_payment_is_404(client):
    r = client.get("/api/payments/payments/999")
    assert r.status_code == 404


def test_fee_quote(client, active_account):
    r = client.get(f"/api/payments/fees/quote?amount=1800&method_type=us_bank_account&connected_account_id={active_account.id}")
    assert r.status_code == 200
    assert r.get_json() == {
        "base_amount": "1800.00",
        "platform_fee": "5.00",
        "charge_amount": "1800.00",
        "net_amount": "1795.00",
        "fee_mode": "landlord_absorbs",
    }


def test_refund_endpoint(client, customer, bank_method, active_account):
    payment_id = _pay(client, customer, bank_method, active_account).get_json()["id"]

    r = client.post(f"/api/payments/payments/{payment_id}/refunds", json={"amount": "2000.00"})
    assert r.status_code == 400

    r = client.post(f"/api/payments/payments/{payment_id}/refunds", json={"amount": "300.00"})
    assert r.status_code == 201
    assert r.get_json()["amount"] == "300.00"

    r = client.get(f"/api/payments/payments/{payment_id}")
    assert r.get_json()["refunded_amount"] == "300.00"


def test_connect_onboarding_flow(client, provider):
    r = client.post(
        "/api/payments/connect",
        json={"landlord_ref": "landlord-8", "email": "Owner@Example.com", "business_type": "individual"},
    )
    assert r.status_code == 201
    account = r.get_json()
    assert account["status"] == "created"
    assert account["email"] == "owner@example.com"

    r = client.post(f"/api/payments/connect/{account['id']}/onboarding-link", json={})
    assert r.status_code == 201
    assert r.get_json()["url"].startswith("https://connect.stripe.com/")

    r = client.get(f"/api/payments/connect/{account['id']}/onboarding/refresh")
    assert r.status_code == 302
    assert provider.count("get_onboarding_url") == 2

    r = client.post(f"/api/payments/connect/{account['id']}/dashboard-link")
    assert r.status_code == 409


def test_payout_speed_requires_explicit_acknowledgment(client, provider, active_account):
    r = client.put(
        f"/api/payments/connect/{active_account.id}/payout-speed",
        json={"trust_level": "expedited", "delay_days": 2, "acknowledge_clawback_risk": "yes"},
    )
    assert r.status_code == 400
    assert provider.count("update_payout_schedule") == 0

    r = client.get(f"/api/payments/connect/{active_account.id}/payout-speed/eligibility")
    assert r.get_json()["eligible"] is False


def test_autopay_enrollment(client, customer, bank_method, lease):
    r = client.put(
        "/api/payments/autopay",
        json={"customer_id": customer.id, "lease_id": lease.id, "payment_method_id": bank_method.id, "day_of_month": 1},
    )
    assert r.status_code == 200
    assert r.get_json()["amount"] == "1800.00"

    r = client.get(f"/api/payments/autopay/{customer.id}/{lease.id}")
    assert r.get_json()["enabled"] is True
    assert r.get_json()["next_payment_date"].endswith("-01")

    r = client.delete(f"/api/payments/autopay/{customer.id}/{lease.id}")
    assert r.get_json()["enabled"] is False


def test_missing_configuration_is_503(app, client, customer, bank_method, active_account):
    reset_payment_provider()
    app.config["STRIPE_SECRET_KEY"] = ""

    r = _pay(client, customer, bank_method, active_account)
    assert r.status_code == 503


def test_rename_payment_method(client, customer, bank_method):
    r = client.patch(f"/api/payments/customers/{customer.id}/payment-methods/{bank_method.id}", json={"nickname": "Rent account"})
    assert r.status_code == 200
    assert r.get_json()["nickname"] == "Rent account"

    r = client.patch(f"/api/payments/customers/{customer.id}/payment-methods/{bank_method.id}", json={})
    assert r.status_code == 400


def test_pay_now_key_reused_for_a_different_amount_is_400(client, customer, bank_method, active_account):
    headers = {"Idempotency-Key": "checkout-9"}
    assert _pay(client, customer, bank_method, active_account, headers=headers).status_code == 201
    assert _pay(client, customer, bank_method, active_account, amount="10.00", headers=headers).status_code == 400
