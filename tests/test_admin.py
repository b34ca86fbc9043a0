"""Tests for admin user management, stats, tickets, themes and seasonal mode."""

import pytest


class TestAdminUsers:
    def test_list_users(self, client, admin_headers, customer):
        emails = {user["email"] for user in client.get("/api/admin/users", headers=admin_headers).get_json()}
        assert customer["email"] in emails

    def test_change_role(self, client, admin_headers, customer):
        response = client.put(
            f"/api/admin/users/{customer['_id']}/role",
            json={"role": "moderator"},
            headers=admin_headers,
        )
        assert response.status_code == 200
        assert response.get_json()["role"] == "moderator"

    def test_invalid_role(self, client, admin_headers, customer):
        response = client.put(
            f"/api/admin/users/{customer['_id']}/role",
            json={"role": "overlord"},
            headers=admin_headers,
        )
        assert response.status_code == 400

    def test_default_admin_keeps_role(self, client, admin_headers, admin_user):
        response = client.put(
            f"/api/admin/users/{admin_user['_id']}/role",
            json={"role": "user"},
            headers=admin_headers,
        )
        assert response.status_code == 400

    def test_block_user_locks_them_out(self, client, admin_headers, customer, customer_headers):
        response = client.put(
            f"/api/admin/users/{customer['_id']}/status",
            json={"isActive": False},
            headers=admin_headers,
        )
        assert response.get_json()["isActive"] is False
        assert client.get("/api/users/all", headers=customer_headers).status_code == 403

    def test_toggle_block_and_role(self, client, admin_headers, customer):
        response = client.post(f"/api/users/{customer['_id']}/toggle-block", headers=admin_headers)
        assert response.get_json()["user"]["isActive"] is False
        response = client.post(f"/api/users/{customer['_id']}/toggle-role", headers=admin_headers)
        assert response.get_json()["user"]["role"] == "admin"

    def test_admin_cannot_block_self(self, client, admin_headers, admin_user):
        response = client.post(f"/api/users/{admin_user['_id']}/toggle-block", headers=admin_headers)
        assert response.status_code == 400

    def test_unknown_user(self, client, admin_headers):
        response = client.put(
            "/api/admin/users/64b7f0c2a1b2c3d4e5f60718/status",
            json={"isActive": True},
            headers=admin_headers,
        )
        assert response.status_code == 404

    def test_moderator_can_list_all_users(self, client, make_user, auth_headers):
        make_user("mod@example.com", role="moderator")
        response = client.get("/api/users/all", headers=auth_headers("mod@example.com"))
        assert response.status_code == 200


class TestStats:
    def test_product_stats(self, client, admin_headers, product):
        client.post("/api/orders", json={"items": [{"name": "Shirt", "price": 30, "qty": 1}]})
        data = client.get("/api/admin/stats/products", headers=admin_headers).get_json()
        assert data["totalProducts"] == 1
        assert data["totalOrders"] == 1
        assert data["totalRevenue"] == 40.0


class TestTickets:
    TICKET = {
        "name": "Jane",
        "email": "jane@example.com",
        "subject": "Late delivery",
        "message": "Where is my order?",
    }

    def test_create_sends_confirmation(self, client, mailer):
        response = client.post("/api/tickets", json=self.TICKET)
        assert response.status_code == 201
        assert response.get_json()["status"] == "open"
        assert mailer.last_to("jane@example.com")["subject"].startswith("We received")

    def test_create_survives_email_failure(self, client, mailer, database):
        mailer.succeed = False
        response = client.post("/api/tickets", json=self.TICKET)
        assert response.status_code == 201
        assert database.tickets.count_documents({}) == 1

    def test_create_requires_fields(self, client):
        response = client.post("/api/tickets", json={"name": "Jane"})
        assert response.status_code == 400
        assert response.get_json()["message"] == "All fields are required"

    def test_staff_reply(self, client, admin_headers, mailer):
        ticket = client.post("/api/tickets", json=self.TICKET).get_json()
        response = client.put(
            f"/api/tickets/{ticket['id']}/reply",
            json={"message": "It ships tomorrow."},
            headers=admin_headers,
        )
        assert response.status_code == 200
        data = response.get_json()
        assert data["adminReply"] == "It ships tomorrow."
        assert data["status"] == "in-progress"
        assert "It ships tomorrow." in mailer.sent[-1]["html"]

    def test_status_update(self, client, admin_headers):
        ticket = client.post("/api/tickets", json=self.TICKET).get_json()
        url = f"/api/tickets/{ticket['id']}/status"
        response = client.put(url, json={"status": "resolved", "priority": "high"}, headers=admin_headers)
        assert response.get_json()["priority"] == "high"
        assert client.put(url, json={"status": "gone"}, headers=admin_headers).status_code == 400

    def test_listing_requires_staff(self, client, customer_headers, admin_headers):
        client.post("/api/tickets", json=self.TICKET)
        assert client.get("/api/tickets", headers=customer_headers).status_code == 403
        assert len(client.get("/api/tickets", headers=admin_headers).get_json()) == 1


class TestThemes:
    def test_default_theme_is_active(self, client):
        themes = client.get("/api/themes").get_json()
        assert themes["default"]["isActive"] is True
        assert client.get("/api/themes/active").get_json()["id"] == "default"

    def test_create_and_activate(self, client, admin_headers):
        response = client.post(
            "/api/themes",
            json={"id": "christmas", "name": "Christmas", "enableSnow": True},
            headers=admin_headers,
        )
        assert response.status_code == 201
        client.post("/api/themes/christmas/activate", headers=admin_headers)
        active = client.get("/api/themes/active").get_json()
        assert active["id"] == "christmas"
        assert active["enableSnow"] is True
        themes = client.get("/api/themes").get_json()
        assert [theme_id for theme_id, theme in themes.items() if theme["isActive"]] == ["christmas"]

    def test_deleting_active_theme_restores_default(self, client, admin_headers):
        client.post("/api/themes", json={"id": "dark", "name": "Dark"}, headers=admin_headers)
        client.post("/api/themes/dark/activate", headers=admin_headers)
        assert client.delete("/api/themes/dark", headers=admin_headers).status_code == 200
        assert client.get("/api/themes/active").get_json()["id"] == "default"

    def test_default_cannot_be_deleted(self, client, admin_headers):
        assert client.delete("/api/themes/default", headers=admin_headers).status_code == 400

    def test_unknown_theme(self, client):
        assert client.get("/api/themes/nope").status_code == 404


class TestChristmasMode:
    def test_default_status(self, client):
        data = client.get("/api/christmas/status").get_json()
        assert data["enabled"] is False
        assert data["discount"] == 25

    def test_toggle(self, client, admin_headers):
        response = client.post(
            "/api/christmas/toggle", json={"enabled": True, "discount": 30}, headers=admin_headers
        )
        assert response.status_code == 200
        data = client.get("/api/christmas/status").get_json()
        assert data["enabled"] is True
        assert data["discount"] == 30

    @pytest.mark.parametrize("discount", [-1, 101, "lots"])
    def test_discount_bounds(self, client, admin_headers, discount):
        response = client.put(
            "/api/christmas/discount", json={"discount": discount}, headers=admin_headers
        )
        assert response.status_code == 400

    def test_discount_update(self, client, admin_headers):
        response = client.put("/api/christmas/discount", json={"discount": 15}, headers=admin_headers)
        assert response.get_json()["discount"] == 15


class TestUserTickets:
    def test_own_tickets_only(self, client, customer, customer_headers, make_user, auth_headers):
        client.post(
            "/api/tickets",
            json={**TestTickets.TICKET, "userId": str(customer["_id"])},
        )
        response = client.get(f"/api/tickets/user/{customer['_id']}", headers=customer_headers)
        assert response.status_code == 200
        assert len(response.get_json()) == 1

        other = make_user("other@example.com")
        response = client.get(
            f"/api/tickets/user/{customer['_id']}", headers=auth_headers(other["email"])
        )
        assert response.status_code == 403
