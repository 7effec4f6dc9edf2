from datetime import timedelta

import pytest
from httpx import AsyncClient
from jose import jwt

from src.core.auth.jwt import decode_token
from src.core.auth.models import User, UserRole
from src.core.config import settings
from src.core.exceptions import AuthenticationError


class TestTokens:
    """Tests for bearer token verification."""

    def test_round_trip_claims(self, token_for):
        token = token_for(7, UserRole.PHARMACIST.value)
        payload = decode_token(token)
        assert payload["sub"] == "7"
        assert payload["role"] == "Pharmacist"

    def test_wrong_type_rejected(self, token_for):
        token = token_for(7, UserRole.STAFF.value)
        with pytest.raises(AuthenticationError):
            decode_token(token, token_type="refresh")

    def test_expired_token_rejected(self, token_for):
        token = token_for(7, UserRole.STAFF.value, expires_in=timedelta(minutes=-1))
        with pytest.raises(AuthenticationError):
            decode_token(token)

    def test_foreign_signature_rejected(self):
        token = jwt.encode(
            {"sub": "7", "type": "access"}, "not-our-secret", algorithm=settings.jwt_algorithm
        )
        with pytest.raises(AuthenticationError):
            decode_token(token)


class TestAuthDependencies:
    """Role checks on the API."""

    async def test_missing_header(self, client: AsyncClient):
        response = await client.get("/api/v1/drugs")
        assert response.status_code == 401
        assert response.json()["success"] is False

    async def test_unknown_user(self, client: AsyncClient, token_for):
        token = token_for(999, UserRole.PHARMACIST.value)
        response = await client.get(
            "/api/v1/drugs", headers={"Authorization": f"Bearer {token}"}
        )
        assert response.status_code == 401

    async def test_staff_cannot_adjust_stock(
        self, client: AsyncClient, opd_staff: User, headers_for
    ):
        response = await client.patch(
            "/api/v1/inventory/stocks/1",
            json={"department": "OPD", "total_quantity": 5, "minimum_stock": 0},
            headers=headers_for(opd_staff),
        )
        assert response.status_code == 403
