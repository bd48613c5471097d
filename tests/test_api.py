"""
HTTP surface: status codes and the response envelope.
"""
from decimal import Decimal

from sqlalchemy.exc import OperationalError

from lifecycle_guard import api
from lifecycle_guard.database import get_db
from lifecycle_guard.repositories import PostRepository

ADDRESS = "12 Market Street, Springfield"
OVERSIZED_ID = 99999999999999999999


def create_post(client, headers, **overrides):
    post_data = {
        "title": "Guarding lifecycles",
        "content": "How ownership checks keep posts safe.",
        "tags": ["api", "guard"],
    }
    post_data.update(overrides)
    return client.post("/api/posts", json=post_data, headers=headers)


class TestPostEndpoints:
    """Post routes"""

    def test_create_post(self, client, auth_headers):
        """Test a created post comes back in the ok envelope"""
        response = create_post(client, auth_headers(7))
        assert response.status_code == 201
        data = response.json()
        assert data["ok"] is True
        assert data["resource"]["status"] == "Draft"
        assert data["resource"]["tags"] == ["api", "guard"]

    def test_create_post_without_token(self, client):
        """Test a missing bearer token is 401"""
        response = create_post(client, {})
        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"
        assert response.json() == {"ok": False, "reason": "Unauthenticated", "message": "Missing credentials"}

    def test_create_post_short_title(self, client, auth_headers):
        """Test request validation still applies"""
        response = create_post(client, auth_headers(7), title="Hi")
        assert response.status_code == 422

    def test_padding_does_not_satisfy_minimum_length(self, client, auth_headers):
        """Test lengths are measured after trimming, since stored text is trimmed"""
        assert create_post(client, auth_headers(7), title="  ab  ").status_code == 422
        assert create_post(client, auth_headers(7), content="   x        ").status_code == 422
        assert create_post(client, auth_headers(7), title="      ").status_code == 422

    def test_padded_edit_below_minimum(self, client, auth_headers):
        """Test a padded short title on update is refused rather than stored"""
        post_id = create_post(client, auth_headers(7)).json()["resource"]["id"]
        response = client.patch(f"/api/posts/{post_id}", json={"title": "  ab  "}, headers=auth_headers(7))
        assert response.status_code == 422

    def test_oversized_id_is_not_found(self, client, auth_headers):
        """Test an id beyond the 64-bit column range answers 404 instead of failing"""
        headers = auth_headers(7)
        for method in ("get", "delete"):
            response = getattr(client, method)(f"/api/posts/{OVERSIZED_ID}", headers=headers)
            assert response.status_code == 404
            assert response.json()["reason"] == "NotFound"
        response = client.patch(f"/api/posts/{OVERSIZED_ID}", json={"title": "Long enough"}, headers=headers)
        assert response.status_code == 404

    def test_oversized_skip_is_rejected(self, client, auth_headers):
        """Test paging offsets are bounded"""
        response = client.get(f"/api/posts?skip={OVERSIZED_ID}", headers=auth_headers(7))
        assert response.status_code == 422

    def test_filter_by_author_and_tag(self, client, auth_headers):
        """Test author and tag filters keep other users' drafts hidden"""
        create_post(client, auth_headers(8), title="Stranger draft", tags=["guard"])
        published = create_post(client, auth_headers(8), title="Stranger published", tags=["Guard"])
        published_id = published.json()["resource"]["id"]
        client.patch(f"/api/posts/{published_id}", json={"status": "Published"}, headers=auth_headers(8))
        create_post(client, auth_headers(7), title="Owner draft", tags=["other"])

        by_author = client.get("/api/posts?author_id=8", headers=auth_headers(7)).json()["resource"]
        assert [item["id"] for item in by_author["items"]] == [published_id]

        by_tag = client.get("/api/posts?tag=GUARD", headers=auth_headers(8)).json()["resource"]
        assert by_tag["count"] == 2
        unknown = client.get(f"/api/posts?author_id={OVERSIZED_ID}", headers=auth_headers(1))
        assert unknown.json()["resource"]["count"] == 0

    def test_stranger_reads_draft(self, client, auth_headers):
        """Test another user's draft answers 404"""
        post_id = create_post(client, auth_headers(7)).json()["resource"]["id"]
        response = client.get(f"/api/posts/{post_id}", headers=auth_headers(8))
        assert response.status_code == 404
        assert response.json()["reason"] == "NotFound"

    def test_stranger_edit_is_forbidden(self, client, auth_headers):
        """Test a non-owner edit answers 403 NotOwner"""
        post_id = create_post(client, auth_headers(7)).json()["resource"]["id"]
        response = client.patch(f"/api/posts/{post_id}", json={"title": "Taken over"}, headers=auth_headers(8))
        assert response.status_code == 403
        assert response.json()["reason"] == "NotOwner"

    def test_blank_title_is_ignored(self, client, auth_headers):
        """Test a blank title in a PATCH leaves the title unchanged"""
        post_id = create_post(client, auth_headers(7)).json()["resource"]["id"]
        response = client.patch(
            f"/api/posts/{post_id}",
            json={"title": "  ", "content": "A new body for the post."},
            headers=auth_headers(7),
        )
        assert response.status_code == 200
        resource = response.json()["resource"]
        assert resource["title"] == "Guarding lifecycles"
        assert resource["content"] == "A new body for the post."

    def test_unpublish_is_bad_request(self, client, auth_headers):
        """Test Published -> Draft answers 400 InvalidTransition"""
        post_id = create_post(client, auth_headers(7)).json()["resource"]["id"]
        client.patch(f"/api/posts/{post_id}", json={"status": "Published"}, headers=auth_headers(7))
        response = client.patch(f"/api/posts/{post_id}", json={"status": "Draft"}, headers=auth_headers(7))
        assert response.status_code == 400
        assert response.json()["reason"] == "InvalidTransition"

    def test_stale_version_is_conflict(self, client, auth_headers):
        """Test an edit against an old version answers 409"""
        resource = create_post(client, auth_headers(7)).json()["resource"]
        url = f"/api/posts/{resource['id']}"
        first = client.patch(url, json={"title": "Newer title", "expected_version": resource["version"]},
                             headers=auth_headers(7))
        assert first.status_code == 200
        second = client.patch(url, json={"title": "Older title", "expected_version": resource["version"]},
                              headers=auth_headers(7))
        assert second.status_code == 409
        assert second.json()["reason"] == "Conflict"

    def test_list_posts(self, client, auth_headers):
        """Test listing returns items and a count"""
        create_post(client, auth_headers(7))
        response = client.get("/api/posts", headers=auth_headers(7))
        assert response.status_code == 200
        assert response.json()["resource"]["count"] == 1

    def test_delete_post(self, client, auth_headers):
        """Test the author deletes their post and it is gone"""
        post_id = create_post(client, auth_headers(7)).json()["resource"]["id"]
        assert client.delete(f"/api/posts/{post_id}", headers=auth_headers(7)).status_code == 200
        assert client.get(f"/api/posts/{post_id}", headers=auth_headers(7)).status_code == 404

    def test_database_unavailable(self, client, auth_headers, monkeypatch):
        """Test driver failures answer 503 with Retry-After"""
        def unreachable(self, post_id):
            raise OperationalError("SELECT", {}, Exception("database is locked"))

        monkeypatch.setattr(PostRepository, "get_post_by_id", unreachable)
        response = client.get("/api/posts/1", headers=auth_headers(7))
        assert response.status_code == 503
        assert response.headers["Retry-After"] == "1"
        assert response.json()["reason"] == "IoError"


class TestOrderEndpoints:
    """Order routes"""

    def place_order(self, client, headers, quantity=2):
        return client.post(
            "/api/orders",
            json={"items": [{"product_id": 1, "quantity": quantity}], "shipping_address": ADDRESS},
            headers=headers,
        )

    def test_place_order(self, client, auth_headers):
        """Test the total is computed from the product price"""
        response = self.place_order(client, auth_headers(7))
        assert response.status_code == 201
        resource = response.json()["resource"]
        assert Decimal(resource["total_amount"]) == Decimal("20.00")
        assert Decimal(resource["items"][0]["unit_price"]) == Decimal("10.00")

    def test_quantity_out_of_range(self, client, auth_headers):
        """Test an oversized line answers 400"""
        response = self.place_order(client, auth_headers(7), quantity=101)
        assert response.status_code == 400
        assert response.json()["reason"] == "QuantityOutOfRange"

    def test_status_flow(self, client, auth_headers):
        """Test admin advances, owner cannot cancel once processing"""
        order_id = self.place_order(client, auth_headers(7)).json()["resource"]["id"]
        url = f"/api/orders/{order_id}/status"

        assert client.put(url, json={"status": "Processing"}, headers=auth_headers(1)).status_code == 200
        denied = client.put(url, json={"status": "Cancelled"}, headers=auth_headers(7))
        assert denied.status_code == 403
        assert denied.json()["reason"] == "NotOwner"

    def test_stranger_order_is_hidden(self, client, auth_headers):
        """Test another user's order answers 404"""
        order_id = self.place_order(client, auth_headers(7)).json()["resource"]["id"]
        assert client.get(f"/api/orders/{order_id}", headers=auth_headers(8)).status_code == 404

    def test_unknown_status_value(self, client, auth_headers):
        """Test a status outside the enum is a validation error"""
        order_id = self.place_order(client, auth_headers(7)).json()["resource"]["id"]
        response = client.put(f"/api/orders/{order_id}/status", json={"status": "Lost"}, headers=auth_headers(1))
        assert response.status_code == 422

    def test_oversized_ids(self, client, auth_headers):
        """Test huge order and product ids are NotFound and ReferencedEntityMissing"""
        response = client.get(f"/api/orders/{OVERSIZED_ID}", headers=auth_headers(1))
        assert response.status_code == 404

        response = client.post(
            "/api/orders",
            json={"items": [{"product_id": OVERSIZED_ID, "quantity": 1}], "shipping_address": ADDRESS},
            headers=auth_headers(7),
        )
        assert response.status_code == 400
        assert response.json()["reason"] == "ReferencedEntityMissing"


class TestAuthEndpoints:
    """Signup, login and the current user"""

    signup_data = {"name": "Nina New", "email": "Nina@Example.com", "password": "correct-horse"}

    def test_signup_then_login(self, client):
        """Test a new account can log in and use its token"""
        response = client.post("/api/auth/signup", json=self.signup_data)
        assert response.status_code == 201
        account = response.json()["resource"]
        assert account["email"] == "nina@example.com"
        assert account["role"] == "User"
        assert "hashed_password" not in account

        login = client.post("/api/auth/login", json={"email": "nina@example.com", "password": "correct-horse"})
        assert login.status_code == 200
        session = login.json()["resource"]
        assert session["token_type"] == "bearer"

        me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {session['access_token']}"})
        assert me.status_code == 200
        assert me.json()["resource"]["id"] == account["id"]

    def test_duplicate_email(self, client):
        """Test an email already registered answers 400 DuplicateName"""
        assert client.post("/api/auth/signup", json=self.signup_data).status_code == 201
        response = client.post("/api/auth/signup", json={**self.signup_data, "email": "NINA@example.com"})
        assert response.status_code == 400
        assert response.json()["reason"] == "DuplicateName"

    def test_wrong_password(self, client):
        """Test a bad password answers 401 with the generic message"""
        client.post("/api/auth/signup", json=self.signup_data)
        response = client.post("/api/auth/login", json={"email": "nina@example.com", "password": "wrong-horse"})
        assert response.status_code == 401
        assert response.json()["message"] == "Invalid email or password"

    def test_signup_validation(self, client):
        """Test short passwords and malformed emails are rejected"""
        assert client.post("/api/auth/signup", json={**self.signup_data, "password": "short"}).status_code == 422
        assert client.post("/api/auth/signup", json={**self.signup_data, "email": "nina"}).status_code == 422
        assert client.post("/api/auth/signup", json={**self.signup_data, "name": "   "}).status_code == 422

    def test_me_without_token(self, client):
        """Test the current user needs a token"""
        assert client.get("/api/auth/me").status_code == 401


class TestCatalogEndpoints:
    """Catalog reads for any user, maintenance for admins"""

    def create_category(self, client, headers, name="Stationery"):
        return client.post("/api/categories", json={"name": name}, headers=headers).json()["resource"]

    def test_users_can_read_catalog(self, client, auth_headers):
        """Test reads need a token but no role"""
        assert client.get("/api/products").status_code == 401
        response = client.get("/api/products/1", headers=auth_headers(7))
        assert response.status_code == 200
        assert response.json()["resource"]["name"] == "Notebook"
        assert client.get("/api/products", headers=auth_headers(7)).json()["resource"]["count"] == 1

    def test_category_detail_and_listing(self, client, auth_headers):
        """Test a category lists its products and the listing counts them"""
        category = self.create_category(client, auth_headers(1))
        client.patch("/api/products/1", json={"category_id": category["id"]}, headers=auth_headers(1))

        detail = client.get(f"/api/categories/{category['id']}", headers=auth_headers(7)).json()["resource"]
        assert [product["name"] for product in detail["products"]] == ["Notebook"]

        listing = client.get("/api/categories", headers=auth_headers(7)).json()["resource"]
        assert listing["items"] == [{"id": category["id"], "name": "Stationery", "product_count": 1}]

        filtered = client.get(f"/api/products?category_id={category['id']}", headers=auth_headers(7))
        assert filtered.json()["resource"]["count"] == 1

    def test_update_product(self, client, auth_headers):
        """Test a partial update changes only the supplied fields"""
        response = client.patch("/api/products/1", json={"name": "Notebook A4", "description": "  "},
                                headers=auth_headers(1))
        assert response.status_code == 200
        resource = response.json()["resource"]
        assert resource["name"] == "Notebook A4"
        assert resource["description"] == "A5, dotted"
        assert client.patch("/api/products/1", json={"name": "Pen"}, headers=auth_headers(7)).status_code == 403

    def test_delete_ordered_product(self, client, auth_headers, make_order):
        """Test a product on an order cannot be deleted"""
        make_order()
        response = client.delete("/api/products/1", headers=auth_headers(1))
        assert response.status_code == 400
        assert response.json()["reason"] == "InUse"

    def test_delete_category_with_products(self, client, auth_headers):
        """Test a category must be empty before it is deleted"""
        category = self.create_category(client, auth_headers(1))
        client.patch("/api/products/1", json={"category_id": category["id"]}, headers=auth_headers(1))
        url = f"/api/categories/{category['id']}"

        assert client.delete(url, headers=auth_headers(1)).json()["reason"] == "InUse"
        assert client.delete("/api/products/1", headers=auth_headers(1)).status_code == 200
        assert client.delete(url, headers=auth_headers(1)).status_code == 200
        assert client.get(url, headers=auth_headers(1)).status_code == 404

    def test_oversized_catalog_ids(self, client, auth_headers):
        """Test huge catalog ids answer 404"""
        assert client.get(f"/api/products/{OVERSIZED_ID}", headers=auth_headers(1)).status_code == 404
        assert client.get(f"/api/categories/{OVERSIZED_ID}", headers=auth_headers(1)).status_code == 404
        assert client.delete(f"/api/users/{OVERSIZED_ID}", headers=auth_headers(1)).status_code == 404


class TestAdminEndpoints:
    """Users, catalog and monitoring"""

    def test_self_delete_forbidden(self, client, auth_headers):
        """Test an admin deleting themself answers 403 SelfDelete"""
        response = client.delete("/api/users/1", headers=auth_headers(1))
        assert response.status_code == 403
        assert response.json()["reason"] == "SelfDelete"

    def test_delete_user(self, client, auth_headers):
        """Test the admin deactivates another user"""
        response = client.delete("/api/users/8", headers=auth_headers(1))
        assert response.status_code == 200
        assert response.json()["resource"]["is_active"] is False

    def test_duplicate_category(self, client, auth_headers):
        """Test a clashing category name answers 400 DuplicateName"""
        assert client.post("/api/categories", json={"name": "Books"}, headers=auth_headers(1)).status_code == 201
        response = client.post("/api/categories", json={"name": "BOOKS"}, headers=auth_headers(1))
        assert response.status_code == 400
        assert response.json()["reason"] == "DuplicateName"

    def test_product_price_change(self, client, auth_headers):
        """Test only an admin may reprice"""
        assert client.put("/api/products/1/price", json={"price": "12.50"}, headers=auth_headers(7)).status_code == 403
        response = client.put("/api/products/1/price", json={"price": "12.50"}, headers=auth_headers(1))
        assert response.status_code == 200
        assert Decimal(response.json()["resource"]["price"]) == Decimal("12.50")

    def test_product_unknown_category(self, client, auth_headers):
        """Test a product in a missing category answers 400"""
        response = client.post(
            "/api/products",
            json={"name": "Pen", "price": "1.50", "category_id": 42},
            headers=auth_headers(1),
        )
        assert response.status_code == 400
        assert response.json()["reason"] == "ReferencedEntityMissing"

    def test_health(self, client):
        """Test the health check reaches the database"""
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["checks"]["database"] == "healthy"

    def test_metrics(self, client, auth_headers):
        """Test guard decisions are exported"""
        client.get("/api/posts", headers=auth_headers(7))
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "guard_decisions_total" in response.text
        assert "http_requests_total" in response.text

    def test_health_hides_driver_error(self, client, monkeypatch):
        """Test a failing database check does not echo the driver message unless debugging"""
        class BrokenSession:
            def execute(self, statement):
                raise OperationalError("SELECT 1", {}, Exception("could not connect to db.internal:5432"))

        api.app.dependency_overrides[get_db] = lambda: BrokenSession()
        monkeypatch.setattr(api.settings, "debug", False)
        response = client.get("/health")
        assert response.status_code == 503
        assert response.json()["checks"]["database"] == "unhealthy"
        assert "db.internal" not in response.text

        monkeypatch.setattr(api.settings, "debug", True)
        assert "db.internal" in client.get("/health").json()["checks"]["database"]
