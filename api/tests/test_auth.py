"""
Tests for authentication and account verification
"""
from datetime import timedelta
import uuid

import httpx
from jose import jwt
import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tradelink.core.security import create_access_token, get_password_hash, verify_password
from tradelink.models.user import User
from tradelink.services.auth_service import issue_token, verify_token

ADMIN_HEADERS = {"X-Admin-Key": "test-admin-key"}
TEST_PASSWORD = "testpassword123"


class TestAuthRouter:
    """Test authentication router endpoints"""

    @pytest.mark.auth
    @pytest.mark.asyncio
    async def test_register_user_success(self, test_client: httpx.AsyncClient):
        """Test successful user registration"""
        response = await test_client.post(
            "/api/auth/register",
            json={"email": "NewUser@Example.com", "password": "secret1", "name": "New User"},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["token"]
        assert data["user"]["email"] == "newuser@example.com"
        assert data["user"]["name"] == "New User"
        assert data["user"]["is_verified"] is False
        assert "password_hash" not in data["user"]
        assert "password" not in data["user"]

    @pytest.mark.auth
    @pytest.mark.asyncio
    async def test_register_duplicate_email_is_case_insensitive(
        self, test_client: httpx.AsyncClient, test_user: User
    ):
        response = await test_client.post(
            "/api/auth/register",
            json={"email": "TEST@example.com", "password": "another1"},
        )

        assert response.status_code == 409
        assert response.json() == {"success": False, "message": "User with this email already exists"}

    @pytest.mark.auth
    @pytest.mark.asyncio
    @pytest.mark.parametrize("password", ["", "a", "12345"])
    async def test_register_short_password_creates_nothing(
        self, test_client: httpx.AsyncClient, test_db: AsyncSession, password: str
    ):
        """Passwords under six characters never produce a record"""
        response = await test_client.post(
            "/api/auth/register",
            json={"email": "short@example.com", "password": password},
        )

        assert response.status_code == 400
        assert response.json()["success"] is False

        count = await test_db.scalar(select(func.count()).select_from(User))
        assert count == 0

    @pytest.mark.auth
    @pytest.mark.asyncio
    async def test_register_invalid_email(self, test_client: httpx.AsyncClient):
        response = await test_client.post(
            "/api/auth/register",
            json={"email": "not-an-email", "password": "secret1"},
        )

        assert response.status_code == 400
        assert response.json()["message"] == "Invalid email format"

    @pytest.mark.auth
    @pytest.mark.asyncio
    async def test_login_success(self, test_client: httpx.AsyncClient, test_user: User):
        """Test successful login"""
        response = await test_client.post(
            "/api/auth/login",
            json={"email": test_user.email, "password": TEST_PASSWORD},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["message"] == "Login successful"
        assert data["user"]["id"] == str(test_user.id)

        claims = verify_token(data["token"])
        assert claims is not None
        assert claims.user_id == test_user.id
        assert claims.is_verified is True
        assert test_user.last_login is not None

    @pytest.mark.auth
    @pytest.mark.asyncio
    async def test_login_unknown_email_and_wrong_password_look_the_same(
        self, test_client: httpx.AsyncClient, test_user: User
    ):
        unknown = await test_client.post(
            "/api/auth/login",
            json={"email": "nobody@example.com", "password": TEST_PASSWORD},
        )
        wrong = await test_client.post(
            "/api/auth/login",
            json={"email": test_user.email, "password": "wrongpassword"},
        )

        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json() == wrong.json()

    @pytest.mark.auth
    @pytest.mark.asyncio
    async def test_login_missing_fields(self, test_client: httpx.AsyncClient):
        response = await test_client.post("/api/auth/login", json={"email": "a@x.com"})

        assert response.status_code == 400
        assert response.json()["message"] == "Email and password are required"

    @pytest.mark.auth
    @pytest.mark.asyncio
    async def test_login_unverified_account_is_forbidden(
        self, test_client: httpx.AsyncClient, unverified_user: User
    ):
        """Correct password on an unverified account is a 403, not a 401"""
        response = await test_client.post(
            "/api/auth/login",
            json={"email": unverified_user.email, "password": TEST_PASSWORD},
        )

        assert response.status_code == 403
        assert "not verified" in response.json()["message"]

    @pytest.mark.auth
    @pytest.mark.asyncio
    async def test_verify_token(self, test_client: httpx.AsyncClient, test_user: User, auth_headers: dict):
        response = await test_client.get("/api/auth/verify", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["user"]["email"] == test_user.email

    @pytest.mark.auth
    @pytest.mark.asyncio
    async def test_verify_without_token(self, test_client: httpx.AsyncClient):
        response = await test_client.get("/api/auth/verify")

        assert response.status_code == 401
        assert response.json()["message"] == "No token provided"

    @pytest.mark.auth
    @pytest.mark.asyncio
    async def test_verify_invalid_token(self, test_client: httpx.AsyncClient):
        response = await test_client.get(
            "/api/auth/verify",
            headers={"Authorization": "Bearer not-a-real-token"},
        )

        assert response.status_code == 401
        assert response.json()["message"] == "Invalid or expired token"

    @pytest.mark.auth
    @pytest.mark.asyncio
    async def test_verify_token_of_unverified_user(
        self, test_client: httpx.AsyncClient, unverified_user: User
    ):
        headers = {"Authorization": f"Bearer {issue_token(unverified_user)}"}
        response = await test_client.get("/api/auth/verify", headers=headers)

        assert response.status_code == 403

    @pytest.mark.auth
    @pytest.mark.asyncio
    async def test_verify_token_for_deleted_user(self, test_client: httpx.AsyncClient):
        token = create_access_token(data={"sub": str(uuid.uuid4()), "email": "ghost@example.com"})
        response = await test_client.get("/api/auth/verify", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 404
        assert response.json()["message"] == "User not found"


class TestAccountVerification:
    """Admin-only account verification"""

    @pytest.mark.auth
    @pytest.mark.asyncio
    async def test_verify_account_requires_admin_key(
        self, test_client: httpx.AsyncClient, unverified_user: User
    ):
        response = await test_client.post(
            "/api/auth/verify-account",
            json={"userId": str(unverified_user.id)},
        )

        assert response.status_code == 401
        assert unverified_user.is_verified is False

    @pytest.mark.auth
    @pytest.mark.asyncio
    async def test_verify_account(self, test_client: httpx.AsyncClient, unverified_user: User):
        response = await test_client.post(
            "/api/auth/verify-account",
            json={"userId": str(unverified_user.id)},
            headers=ADMIN_HEADERS,
        )

        assert response.status_code == 200
        assert response.json()["user"]["is_verified"] is True

    @pytest.mark.auth
    @pytest.mark.asyncio
    @pytest.mark.parametrize("user_id,status", [(None, 400), ("not-a-uuid", 400), (str(uuid.UUID(int=1)), 404)])
    async def test_verify_account_bad_user_id(self, test_client: httpx.AsyncClient, user_id, status):
        response = await test_client.post(
            "/api/auth/verify-account",
            json={"userId": user_id},
            headers=ADMIN_HEADERS,
        )

        assert response.status_code == status

    @pytest.mark.auth
    @pytest.mark.asyncio
    async def test_list_pending_users(
        self, test_client: httpx.AsyncClient, test_user: User, unverified_user: User
    ):
        response = await test_client.get(
            "/api/auth/admin/users",
            params={"verified": "false"},
            headers=ADMIN_HEADERS,
        )

        assert response.status_code == 200
        emails = [u["email"] for u in response.json()["users"]]
        assert emails == [unverified_user.email]


class TestTokens:
    """Identity token helpers"""

    @pytest.mark.unit
    def test_password_hashing(self):
        hashed = get_password_hash("testpassword123")

        assert hashed != "testpassword123"
        assert verify_password("testpassword123", hashed)
        assert not verify_password("wrongpassword", hashed)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_token_carries_identity_claims(self, test_user: User):
        claims = verify_token(issue_token(test_user))

        assert claims.user_id == test_user.id
        assert claims.email == test_user.email
        assert claims.name == "Test User"
        assert claims.is_verified is True

    @pytest.mark.unit
    @pytest.mark.parametrize("token", [None, "", "garbage", "a.b.c"])
    def test_verify_token_never_raises(self, token):
        assert verify_token(token) is None

    @pytest.mark.unit
    def test_expired_token(self):
        token = create_access_token(
            data={"sub": str(uuid.uuid4()), "email": "a@x.com"},
            expires_delta=timedelta(seconds=-1),
        )

        assert verify_token(token) is None

    @pytest.mark.unit
    def test_token_with_wrong_signature(self):
        token = jwt.encode({"sub": str(uuid.uuid4()), "email": "a@x.com"}, "other-secret", algorithm="HS256")

        assert verify_token(token) is None


class TestScenario:
    """Register, get verified, log in"""

    @pytest.mark.auth
    @pytest.mark.asyncio
    async def test_register_verify_login(self, test_client: httpx.AsyncClient):
        credentials = {"email": "a@x.com", "password": "secret1"}

        registered = await test_client.post("/api/auth/register", json=credentials)
        assert registered.status_code == 200
        assert registered.json()["user"]["is_verified"] is False
        user_id = registered.json()["user"]["id"]

        refused = await test_client.post("/api/auth/login", json=credentials)
        assert refused.status_code == 403

        verified = await test_client.post(
            "/api/auth/verify-account", json={"userId": user_id}, headers=ADMIN_HEADERS
        )
        assert verified.json()["user"]["is_verified"] is True

        login = await test_client.post("/api/auth/login", json=credentials)
        assert login.status_code == 200
        assert login.json()["token"]
