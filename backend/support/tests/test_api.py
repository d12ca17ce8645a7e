import uuid
from datetime import timedelta

import pytest
from rest_framework.test import APIClient

from crm.models import Customer
from platformapp.models import AuditLog
from support import services
from support.models import AutomationRule, KBArticle, SLAPolicy, Ticket

pytestmark = pytest.mark.django_db

TICKETS = "/api/v1/support/tickets/"


@pytest.fixture
def ticket(tenant):
    return services.create_ticket(tenant, {"title": "VPN keeps dropping", "requester_email": "pat@example.com"})


def test_create_ticket_assigns_reference_and_sla(staff_client, tenant):
    resp = staff_client.post(TICKETS, {"title": "Cannot log in", "priority": "high"}, format="json")
    assert resp.status_code == 201, resp.json()
    body = resp.json()
    assert body["reference"] == "TKT-000001"
    assert body["sla_policy_name"] == "Standard SLA"
    assert body["due_date"] and body["response_due_at"]
    t = Ticket.objects.get()
    assert t.tenant == tenant and t.channel == "staff"


def test_create_ticket_with_client_requester(staff_client, tenant):
    client_rec = Customer.objects.create(tenant=tenant, name="Pat Doe", email="pat@example.com")
    resp = staff_client.post(TICKETS, {"title": "Invoice", "requester_type": "client",
                                       "requester_id": str(client_rec.pk)}, format="json")
    assert resp.status_code == 201, resp.json()
    assert resp.json()["requester"] == {"type": "client", "id": str(client_rec.pk),
                                        "name": "Pat Doe", "email": "pat@example.com"}


def test_foreign_category_is_rejected(staff_client, other_tenant):
    from support.models import TicketCategory
    foreign = TicketCategory.objects.create(tenant=other_tenant, name="Theirs")
    resp = staff_client.post(TICKETS, {"title": "x", "category": str(foreign.pk)}, format="json")
    assert resp.status_code == 400
    body = resp.json()
    assert body["success"] is False
    assert "category" in body["errors"]


def test_tickets_need_tenant_and_staff(staff_user, portal_user, tenant):
    client = APIClient()
    client.force_authenticate(staff_user)
    assert client.get(TICKETS).status_code == 403

    client.force_authenticate(portal_user)
    client.credentials(HTTP_X_TENANT_ID=str(tenant.id))
    resp = client.get(TICKETS)
    assert resp.status_code == 403
    assert resp.json()["success"] is False


def test_other_tenant_ticket_is_invisible(staff_client, other_tenant):
    theirs = services.create_ticket(other_tenant, {"title": "Private"})
    assert staff_client.get(f"{TICKETS}{theirs.pk}/").status_code == 404
    assert staff_client.get(TICKETS).json()["count"] == 0


def test_tenant_header_accepts_slug(staff_user, tenant, ticket):
    client = APIClient()
    client.force_authenticate(staff_user)
    client.credentials(HTTP_X_TENANT_ID="acme")
    assert client.get(TICKETS).json()["count"] == 1


def test_reopen_requires_a_finished_ticket(staff_client, ticket):
    resp = staff_client.post(f"{TICKETS}{ticket.pk}/reopen/", {}, format="json")
    assert resp.status_code == 422
    assert resp.json() == {"success": False, "message": "Only resolved or closed tickets can be reopened.",
                           "errors": {"status": ["Only resolved or closed tickets can be reopened."]}}


def test_close_then_reopen(staff_client, ticket):
    resp = staff_client.post(f"{TICKETS}{ticket.pk}/close/", {}, format="json")
    assert resp.json()["ticket"]["status"] == "closed"
    assert resp.json()["ticket"]["closed_at"]

    resp = staff_client.post(f"{TICKETS}{ticket.pk}/reopen/", {"reason": "still broken"}, format="json")
    t = resp.json()["ticket"]
    assert t["status"] == "open" and t["closed_at"] is None and t["reopened_at"]


def test_patch_fires_status_change(staff_client, tenant, ticket):
    AutomationRule.objects.create(tenant=tenant, name="pending tag", trigger_event="ticket_status_changed",
                                  actions=[{"type": "add_tag", "params": {"tag": "waiting"}}])
    resp = staff_client.patch(f"{TICKETS}{ticket.pk}/", {"status": "pending"}, format="json")
    assert resp.status_code == 200
    ticket.refresh_from_db()
    assert ticket.status == "pending"
    assert ticket.tags == ["waiting"]


def test_public_staff_comment_marks_first_response(staff_client, ticket):
    resp = staff_client.post(f"{TICKETS}{ticket.pk}/comment/", {"content": "Looking into it"}, format="json")
    assert resp.status_code == 201
    ticket.refresh_from_db()
    assert ticket.first_response_at is not None
    assert ticket.response_time_minutes == 0


def test_internal_note_is_not_a_response(staff_client, ticket):
    staff_client.post(f"{TICKETS}{ticket.pk}/comment/", {"content": "hmm", "is_internal": True}, format="json")
    ticket.refresh_from_db()
    assert ticket.first_response_at is None


def test_escalate_records_and_notifies(staff_client, second_agent, ticket):
    from notificationsapp.models import NotificationDispatch
    resp = staff_client.post(f"{TICKETS}{ticket.pk}/escalate/",
                             {"reason": "customer is blocked", "escalated_to": str(second_agent.pk)}, format="json")
    assert resp.status_code == 201, resp.json()
    assert resp.json()["ticket"]["escalation_level"] == 1
    assert resp.json()["ticket"]["assigned_to"] == str(second_agent.pk)
    assert NotificationDispatch.objects.get().to_address == second_agent.email


def test_sla_endpoint(staff_client, ticket):
    body = staff_client.get(f"{TICKETS}{ticket.pk}/sla/").json()
    assert body["policy"]["name"] == "Standard SLA"
    assert body["resolution"]["breached"] is False


def test_ai_endpoints_use_heuristics(staff_client, ticket):
    body = staff_client.get(f"{TICKETS}{ticket.pk}/ai/classify/").json()
    assert body["provider"] == "heuristic" and body["fallback"] is False
    reply = staff_client.get(f"{TICKETS}{ticket.pk}/ai/suggest-reply/").json()
    assert "VPN keeps dropping" in reply["reply"]
    sentiment = staff_client.post(f"{TICKETS}{ticket.pk}/ai/sentiment/", {"text": "This is awful and useless"},
                                  format="json").json()
    assert sentiment["sentiment"] == "negative"
    ticket.refresh_from_db()
    assert ticket.metadata["ai"]["sentiment"]["sentiment"] == "negative"


def test_ai_provider_failure_falls_back(staff_client, ticket, settings):
    import requests
    from unittest import mock
    settings.SUPPORT_AI = {"PROVIDER": "http", "URL": "https://ai.example/run", "TOKEN": "t", "TIMEOUT": 1}
    with mock.patch("support.ai.requests.post", side_effect=requests.ConnectionError("nope")):
        body = staff_client.get(f"{TICKETS}{ticket.pk}/ai/summary/").json()
    assert body["fallback"] is True
    assert body["provider"] == "heuristic"
    assert body["summary"].startswith("VPN keeps dropping")


def test_bulk_counts_processed_and_skipped(staff_client, tenant, other_tenant):
    mine = [services.create_ticket(tenant, {"title": f"t{i}"}) for i in range(2)]
    theirs = services.create_ticket(other_tenant, {"title": "foreign"})
    ids = [str(t.pk) for t in mine] + [str(theirs.pk), "not-a-uuid", str(uuid.uuid4())]
    resp = staff_client.post(f"{TICKETS}bulk/", {"ids": ids, "action": "set_priority",
                                                 "params": {"priority": "urgent"}}, format="json")
    body = resp.json()
    assert resp.status_code == 200
    assert body["processed"] == 2 and body["skipped"] == 3
    assert body["message"] == "Successfully processed 2 tickets."
    assert set(Ticket.objects.filter(tenant=tenant).values_list("priority", flat=True)) == {"urgent"}
    theirs.refresh_from_db()
    assert theirs.priority == "medium"


def test_bulk_close_skips_already_closed(staff_client, tenant):
    a = services.create_ticket(tenant, {"title": "a"})
    b = services.create_ticket(tenant, {"title": "b"})
    services.close_ticket(b)
    body = staff_client.post(f"{TICKETS}bulk/", {"ids": [str(a.pk), str(b.pk)], "action": "close"},
                             format="json").json()
    assert body["processed"] == 1
    assert body["skipped_ids"] == [str(b.pk)]


def test_bulk_rejects_unknown_action(staff_client, ticket):
    resp = staff_client.post(f"{TICKETS}bulk/", {"ids": [str(ticket.pk)], "action": "explode"}, format="json")
    assert resp.status_code == 422


def test_sla_policy_in_use_cannot_be_deleted(staff_client, ticket):
    policy = ticket.sla_policy
    other = SLAPolicy.objects.create(tenant=ticket.tenant, name="Spare", response_time_hours=1,
                                     resolution_time_hours=2, escalation_time_hours=1)
    resp = staff_client.delete(f"/api/v1/support/sla-policies/{policy.pk}/")
    assert resp.status_code == 422
    assert resp.json()["message"] == "Cannot delete SLA policy that has tickets assigned to it."
    assert staff_client.delete(f"/api/v1/support/sla-policies/{other.pk}/").status_code == 204


def test_sla_policy_bounds_are_validated(staff_client):
    resp = staff_client.post("/api/v1/support/sla-policies/", {
        "name": "Too slow", "response_time_hours": 0, "resolution_time_hours": 721, "escalation_time_hours": 5,
    }, format="json")
    assert resp.status_code == 400
    assert {"response_time_hours", "resolution_time_hours"} <= set(resp.json()["errors"])


def test_set_default_policy_is_exclusive(staff_client, tenant, ticket):
    new = SLAPolicy.objects.create(tenant=tenant, name="Gold", response_time_hours=1,
                                   resolution_time_hours=8, escalation_time_hours=2)
    resp = staff_client.post(f"/api/v1/support/sla-policies/{new.pk}/set-default/", {}, format="json")
    assert resp.json()["policy"]["is_default"] is True
    assert list(SLAPolicy.objects.filter(tenant=tenant, is_default=True)) == [new]


def test_sla_policy_metrics(staff_client, ticket):
    body = staff_client.get(f"/api/v1/support/sla-policies/{ticket.sla_policy_id}/metrics/?days=7").json()
    assert body["tickets"] == 1 and body["compliance_percentage"] == 100.0


def test_automation_rule_validation_errors(staff_client):
    resp = staff_client.post("/api/v1/support/automation-rules/", {
        "name": "Broken", "trigger_event": "ticket_created", "conditions": [], "actions": [],
    }, format="json")
    assert resp.status_code == 400
    assert resp.json()["errors"]["actions"] == ["At least one action is required."]


def test_automation_rule_dry_run_endpoint(staff_client, staff_user, ticket):
    resp = staff_client.post("/api/v1/support/automation-rules/", {
        "name": "VPN", "trigger_event": "ticket_created",
        "conditions": [{"field": "title", "operator": "contains", "value": "vpn"}],
        "actions": [{"type": "add_tag", "params": {"tag": "network"}}],
    }, format="json")
    assert resp.status_code == 201, resp.json()
    assert resp.json()["created_by"] == str(staff_user.pk)
    body = staff_client.post("/api/v1/support/automation-rules/test/",
                             {"rule": resp.json()["id"], "ticket_id": str(ticket.pk)}, format="json").json()
    assert body["matches"] is True
    ticket.refresh_from_db()
    assert ticket.tags == []


def test_automation_metadata_lists_registries(staff_client):
    body = staff_client.get("/api/v1/support/automation-rules/metadata/").json()
    assert {"value": "ticket_created", "label": "Ticket created"} in body["trigger_events"]
    assert len(body["operators"]) == 12
    assert "escalate" in [a["value"] for a in body["actions"]]


def test_kb_public_read_only_shows_published(public_client, tenant):
    KBArticle.objects.create(tenant=tenant, title="Reset your password", body="Use the link.", is_published=True)
    KBArticle.objects.create(tenant=tenant, title="Draft", body="wip")
    resp = public_client.get("/api/v1/support/kb/")
    assert [a["title"] for a in resp.json()["results"]] == ["Reset your password"]
    assert public_client.post("/api/v1/support/kb/", {"title": "x", "body": "y"}, format="json").status_code in (401, 403)


def test_kb_feedback_and_views(public_client, tenant):
    art = KBArticle.objects.create(tenant=tenant, title="VPN setup", body="Install the client.", is_published=True)
    public_client.get(f"/api/v1/support/kb/{art.pk}/")
    body = public_client.post(f"/api/v1/support/kb/{art.pk}/feedback/", {"helpful": True}, format="json").json()
    assert body["helpful_count"] == 1
    art.refresh_from_db()
    assert art.view_count == 1


def test_kb_search(public_client, tenant):
    KBArticle.objects.create(tenant=tenant, title="VPN setup", body="Install the VPN client.", is_published=True)
    KBArticle.objects.create(tenant=tenant, title="Printer", body="Paper jam.", is_published=True)
    body = public_client.get("/api/v1/support/kb/search/?q=vpn client").json()
    assert [r["title"] for r in body["results"]] == ["VPN setup"]


def test_analytics_json_and_csv(staff_client, ticket):
    body = staff_client.get("/api/v1/support/analytics/").json()
    assert body["totals"]["tickets"] == 1
    assert body["by_status"] == {"open": 1}
    resp = staff_client.get("/api/v1/support/analytics/?format=csv")
    assert resp.status_code == 200
    assert resp["Content-Type"].startswith("text/csv")
    assert b"totals,tickets,1" in resp.content


def test_analytics_with_unknown_tenant_is_forbidden(staff_user, ticket):
    client = APIClient()
    client.force_authenticate(staff_user)
    client.credentials(HTTP_X_TENANT_ID="no-such-tenant")
    resp = client.get("/api/v1/support/analytics/")
    assert resp.status_code == 403
    assert resp.json() == {"success": False, "message": "Missing tenant context", "errors": {}}


def test_set_sla_policy_action_recomputes_due_dates(staff_client, tenant, other_tenant, ticket):
    fast = SLAPolicy.objects.create(tenant=tenant, name="Fast lane", response_time_hours=2,
                                    resolution_time_hours=10, escalation_time_hours=5)
    resp = staff_client.patch(f"{TICKETS}{ticket.pk}/", {"sla_policy": str(fast.pk)}, format="json")
    assert resp.status_code == 400
    assert resp.json()["errors"]["sla_policy"] == ["Use the set-sla-policy action to change this."]

    resp = staff_client.post(f"{TICKETS}{ticket.pk}/set-sla-policy/", {"sla_policy": str(fast.pk)}, format="json")
    assert resp.status_code == 200, resp.json()
    assert resp.json()["ticket"]["sla_policy"] == str(fast.pk)
    ticket.refresh_from_db()
    assert ticket.response_due_at == ticket.created_at + timedelta(hours=2)
    assert ticket.due_date == ticket.created_at + timedelta(hours=10)
    assert AuditLog.objects.filter(action="ticket.sla_changed", entity_id=str(ticket.pk)).exists()

    theirs = SLAPolicy.objects.create(tenant=other_tenant, name="Theirs", response_time_hours=1,
                                      resolution_time_hours=1, escalation_time_hours=1)
    resp = staff_client.post(f"{TICKETS}{ticket.pk}/set-sla-policy/", {"sla_policy": str(theirs.pk)}, format="json")
    assert resp.status_code == 400
    assert "sla_policy" in resp.json()["errors"]
