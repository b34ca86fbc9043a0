"""Tests for newsletter subscription, promos and broadcasts."""

import re

import pytest

SUBSCRIBER = "reader@example.com"


def sent_code(mailer, email):
    message = mailer.last_to(email)
    assert message is not None
    return re.search(r"\b(\d{6})\b", message["text"]).group(1)


class TestSendOtp:
    def test_sends_code(self, client, mailer):
        response = client.post("/api/newsletter/send-otp", json={"email": "Reader@Example.com"})
        assert response.status_code == 200
        data = response.get_json()
        assert data["email"] == SUBSCRIBER
        assert data["expiresInSeconds"] == 600
        assert sent_code(mailer, SUBSCRIBER)

    def test_requires_email(self, client):
        assert client.post("/api/newsletter/send-otp", json={}).status_code == 400

    def test_rejects_malformed_email(self, client):
        assert client.post("/api/newsletter/send-otp", json={"email": "nope"}).status_code == 400

    def test_delivery_failure_still_succeeds(self, client, mailer, otp_store):
        mailer.succeed = False
        response = client.post("/api/newsletter/send-otp", json={"email": SUBSCRIBER})
        assert response.status_code == 200
        assert otp_store.get(f"newsletter:{SUBSCRIBER}") is not None


class TestVerify:
    def test_correct_code_subscribes(self, client, mailer, database):
        client.post("/api/newsletter/send-otp", json={"email": SUBSCRIBER})
        response = client.post(
            "/api/newsletter/verify",
            json={"email": SUBSCRIBER, "otp": sent_code(mailer, SUBSCRIBER)},
        )
        assert response.status_code == 200
        user = database.users.find_one({"email": SUBSCRIBER})
        assert user["is_newsletter_subscribed"] is True

    def test_existing_user_is_flagged(self, client, mailer, database, customer):
        client.post("/api/newsletter/send-otp", json={"email": customer["email"]})
        client.post(
            "/api/newsletter/verify",
            json={"email": customer["email"], "otp": sent_code(mailer, customer["email"])},
        )
        assert database.users.count_documents({"email": customer["email"]}) == 1
        assert database.users.find_one({"_id": customer["_id"]})["is_newsletter_subscribed"]

    def test_code_is_single_use(self, client, mailer):
        client.post("/api/newsletter/send-otp", json={"email": SUBSCRIBER})
        payload = {"email": SUBSCRIBER, "otp": sent_code(mailer, SUBSCRIBER)}
        assert client.post("/api/newsletter/verify", json=payload).status_code == 200
        assert client.post("/api/newsletter/verify", json=payload).status_code == 400

    def test_wrong_code(self, client, mailer, database):
        client.post("/api/newsletter/send-otp", json={"email": SUBSCRIBER})
        code = sent_code(mailer, SUBSCRIBER)
        wrong = "000000" if code != "000000" else "111111"
        response = client.post("/api/newsletter/verify", json={"email": SUBSCRIBER, "otp": wrong})
        assert response.status_code == 400
        assert database.users.find_one({"email": SUBSCRIBER}) is None

    def test_attempt_limit_is_configurable(self, app, client, mailer):
        app.config["OTP_MAX_FAILED_ATTEMPTS"] = 2
        client.post("/api/newsletter/send-otp", json={"email": SUBSCRIBER})
        code = sent_code(mailer, SUBSCRIBER)
        wrong = "000000" if code != "000000" else "111111"
        for _ in range(2):
            client.post("/api/newsletter/verify", json={"email": SUBSCRIBER, "otp": wrong})
        response = client.post("/api/newsletter/verify", json={"email": SUBSCRIBER, "otp": code})
        assert response.status_code == 400
        assert response.get_json()["message"] == "Invalid or expired OTP"

    def test_new_code_resets_attempts(self, client, mailer):
        client.post("/api/newsletter/send-otp", json={"email": SUBSCRIBER})
        first = sent_code(mailer, SUBSCRIBER)
        wrong = "000000" if first != "000000" else "111111"
        for _ in range(5):
            client.post("/api/newsletter/verify", json={"email": SUBSCRIBER, "otp": wrong})
        client.post("/api/newsletter/send-otp", json={"email": SUBSCRIBER})
        response = client.post(
            "/api/newsletter/verify",
            json={"email": SUBSCRIBER, "otp": sent_code(mailer, SUBSCRIBER)},
        )
        assert response.status_code == 200

    def test_expired_code(self, client, mailer, clock):
        client.post("/api/newsletter/send-otp", json={"email": SUBSCRIBER})
        code = sent_code(mailer, SUBSCRIBER)
        clock.advance(601)
        response = client.post("/api/newsletter/verify", json={"email": SUBSCRIBER, "otp": code})
        assert response.status_code == 400
        assert response.get_json()["message"] == "Invalid or expired OTP"

    def test_never_requested(self, client):
        response = client.post("/api/newsletter/verify", json={"email": SUBSCRIBER, "otp": "123456"})
        assert response.status_code == 400
        assert response.get_json()["message"] == "Invalid or expired OTP"


class TestSubscribersAndBroadcast:
    @pytest.fixture
    def subscribers(self, make_user):
        make_user("one@example.com", is_newsletter_subscribed=True)
        make_user("two@example.com", is_newsletter_subscribed=True)
        make_user("three@example.com")

    def test_list_subscribers(self, client, admin_headers, subscribers):
        data = client.get("/api/newsletter/subscribers", headers=admin_headers).get_json()
        assert data["count"] == 2
        assert {entry["email"] for entry in data["subscribers"]} == {
            "one@example.com",
            "two@example.com",
        }

    def test_subscribers_require_admin(self, client, customer_headers):
        assert client.get("/api/newsletter/subscribers", headers=customer_headers).status_code == 403

    def test_broadcast(self, client, admin_headers, mailer, subscribers):
        response = client.post(
            "/api/newsletter/broadcast",
            json={"subject": "Summer sale", "message": "Everything 20% off"},
            headers=admin_headers,
        )
        assert response.status_code == 200
        assert response.get_json()["recipientCount"] == 2
        assert {message["to"][0] for message in mailer.sent} == {
            "one@example.com",
            "two@example.com",
        }

    def test_broadcast_requires_subject(self, client, admin_headers):
        response = client.post(
            "/api/newsletter/broadcast", json={"message": "Hi"}, headers=admin_headers
        )
        assert response.status_code == 400


class TestPromos:
    def test_create_and_list(self, client, admin_headers):
        response = client.post(
            "/api/newsletter/promos",
            json={"title": "Spring", "discountCode": "spring10", "discountPercent": 10},
            headers=admin_headers,
        )
        assert response.status_code == 201
        assert response.get_json()["promo"]["discountCode"] == "SPRING10"
        promos = client.get("/api/newsletter/promos").get_json()
        assert [promo["title"] for promo in promos] == ["Spring"]

    def test_expired_promo_is_hidden(self, client, admin_headers):
        client.post(
            "/api/newsletter/promos",
            json={"title": "Old", "discountCode": "OLD", "validTill": "2001-01-01"},
            headers=admin_headers,
        )
        assert client.get("/api/newsletter/promos").get_json() == []

    def test_discount_out_of_range(self, client, admin_headers):
        response = client.post(
            "/api/newsletter/promos",
            json={"title": "Bad", "discountCode": "BAD", "discountPercent": 150},
            headers=admin_headers,
        )
        assert response.status_code == 400
