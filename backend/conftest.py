import pytest
from django.contrib.auth import get_user_model
from django.core.cache import cache
from rest_framework.test import APIClient

from platformapp.models import Tenant


@pytest.fixture(autouse=True)
def _clear_cache():
    cache.clear()
    yield
    cache.clear()


@pytest.fixture(autouse=True)
def _fresh_storage(settings):
    # a new InMemoryStorage per test; uploads and sitemaps never leak between tests
    settings.STORAGES = {**settings.STORAGES, "default": {"BACKEND": "django.core.files.storage.InMemoryStorage"}}


@pytest.fixture
def tenant(db):
    return Tenant.objects.create(slug="acme", name="Acme")


@pytest.fixture
def other_tenant(db):
    return Tenant.objects.create(slug="globex", name="Globex")


@pytest.fixture
def staff_user(db):
    return get_user_model().objects.create_user(
        "agent@acme.test", "pw-12345", full_name="Alex Agent", is_staff=True
    )


@pytest.fixture
def second_agent(db):
    return get_user_model().objects.create_user(
        "lead@acme.test", "pw-12345", full_name="Lee Lead", is_staff=True
    )


@pytest.fixture
def portal_user(db):
    return get_user_model().objects.create_user("customer@example.com", "pw-12345")


@pytest.fixture
def api_client():
    return APIClient()


@pytest.fixture
def staff_client(staff_user, tenant):
    client = APIClient()
    client.force_authenticate(staff_user)
    client.credentials(HTTP_X_TENANT_ID=str(tenant.id))
    return client


@pytest.fixture
def public_client(tenant):
    client = APIClient()
    client.credentials(HTTP_X_TENANT_ID=str(tenant.id))
    return client
