"""
Health Check Tests
==================

Tests for the health check endpoints.
"""

import pytest
from httpx import AsyncClient


@pytest.mark.asyncio
async def test_health_check(client: AsyncClient):
    """Test the health check endpoint."""
    response = await client.get("/health")
    
    assert response.status_code == 200
    data = response.json()
    
    assert data["status"] == "healthy"
    assert data["environment"] == "test"
    assert "version" in data


@pytest.mark.asyncio
async def test_root_endpoint(client: AsyncClient):
    """Test the root endpoint."""
    response = await client.get("/")
    
    assert response.status_code == 200
    data = response.json()
    
    assert data["name"] == "Premium Entitlement API"
    assert "version" in data


@pytest.mark.asyncio
async def test_docs_disabled_outside_development(client: AsyncClient):
    """OpenAPI docs are only served when ENVIRONMENT=development."""
    response = await client.get("/docs")

    assert response.status_code == 404
