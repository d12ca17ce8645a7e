import pytest

from crm.models import Customer, Lead

pytestmark = pytest.mark.django_db


def test_customer_create_injects_tenant(staff_client, tenant):
    resp = staff_client.post("/api/v1/crm/customer/", {"name": "Jane Doe", "email": "jane@example.com"}, format="json")
    assert resp.status_code == 201
    assert Customer.objects.get().tenant == tenant


def test_auto_lead_endpoint_is_tenant_scoped(staff_client, tenant, other_tenant):
    Lead.objects.create(tenant=tenant, name="Mine")
    Lead.objects.create(tenant=other_tenant, name="Theirs")
    resp = staff_client.get("/api/v1/crm/lead/")
    assert resp.status_code == 200
    assert [r["name"] for r in resp.json()["results"]] == ["Mine"]


def test_crm_requires_tenant_header(staff_user, api_client):
    api_client.force_authenticate(staff_user)
    resp = api_client.get("/api/v1/crm/customer/")
    assert resp.status_code == 403
