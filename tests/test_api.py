import unittest

from fakes import FakeJira, add_org, build_service


class ApiTestCase(unittest.TestCase):
    def setUp(self):
        from fastapi import FastAPI
        from fastapi.testclient import TestClient

        from syncbridge.api import organizations, stats, sync, webhooks
        from syncbridge.services.sync_service import get_sync_service

        self.local = FakeJira(base_url="https://local.example.net", project_key="LOC", account_id="local-bot")
        self.remote = FakeJira(project_key="REM")
        self.service = build_service(local=self.local, remotes={"org1": self.remote})

        app = FastAPI()
        for module in (organizations, stats, sync, webhooks):
            app.include_router(module.router)
        app.dependency_overrides[get_sync_service] = lambda: self.service
        self.client = TestClient(app)


class ModelConfigTests(unittest.TestCase):
    def test_models_accept_field_names_and_aliases(self):
        from syncbridge.api.organizations import OrganizationCreate
        from syncbridge.api.sync import BulkSyncRequest
        from syncbridge.services.organizations import Organization, ScheduledSyncConfig, SyncOptions

        by_alias = Organization(id="org1", name="Acme", remoteProjectKey="ACME", remoteApiToken="tok")
        by_name = Organization(id="org1", name="Acme", remote_project_key="ACME", remote_api_token="tok")
        self.assertEqual(by_alias, by_name)
        self.assertNotIn("remoteApiToken", by_alias.model_dump(by_alias=True))

        self.assertFalse(SyncOptions(syncLinks=False).sync_links)
        self.assertFalse(SyncOptions(sync_links=False).sync_links)
        self.assertEqual(ScheduledSyncConfig(sync_scope="all").sync_scope, "all")
        self.assertEqual(BulkSyncRequest(orgId="org1").org_id, BulkSyncRequest(org_id="org1").org_id)
        created = OrganizationCreate(
            name="Acme", remote_url="https://acme.example.net", remote_email="a@b.c", remote_project_key="ACME"
        )
        self.assertEqual(created.remote_project_key, "ACME")

    def test_response_validates_from_attributes(self):
        from types import SimpleNamespace

        from syncbridge.api.organizations import OrganizationResponse

        org = SimpleNamespace(
            id="org1", name="Acme", remote_url="https://acme.example.net", remote_email="a@b.c",
            remote_project_key="ACME", allowed_projects=[], jql_filter=None, sync_direction="push",
            archived=False, has_token=True,
        )

        response = OrganizationResponse.model_validate(org)

        self.assertTrue(response.has_token)
        self.assertEqual(response.model_dump(by_alias=True)["remoteProjectKey"], "ACME")


class OrganizationApiTests(ApiTestCase):
    def _create(self, **overrides):
        body = {
            "name": "Acme",
            "remoteUrl": "https://acme.example.net",
            "remoteEmail": "sync@acme.example.net",
            "remoteApiToken": "tok",
            "remoteProjectKey": "ACME",
        }
        body.update(overrides)
        return self.client.post("/api/organizations/", json=body)

    def test_create_list_and_token_is_hidden(self):
        response = self._create()
        self.assertEqual(response.status_code, 200)
        created = response.json()
        self.assertTrue(created["hasToken"])
        self.assertNotIn("remoteApiToken", created)
        self.assertEqual(created["remoteProjectKey"], "ACME")

        listed = self.client.get("/api/organizations/").json()
        self.assertEqual([o["name"] for o in listed], ["Acme"])
        self.assertEqual(self.service.organizations.get(created["id"]).remote_api_token, "tok")

    def test_duplicate_name_is_rejected(self):
        self._create()
        self.assertEqual(self._create().status_code, 400)

    def test_update_keeps_token_when_blank(self):
        org_id = self._create().json()["id"]

        response = self.client.put(
            f"/api/organizations/{org_id}",
            json={
                "name": "Acme Corp",
                "remoteUrl": "https://acme.example.net",
                "remoteEmail": "sync@acme.example.net",
                "remoteApiToken": "",
                "remoteProjectKey": "ACME",
                "syncDirection": "bidirectional",
            },
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["syncDirection"], "bidirectional")
        self.assertEqual(self.service.organizations.get(org_id).remote_api_token, "tok")

    def test_archive_hides_from_default_list(self):
        org_id = self._create().json()["id"]

        self.assertEqual(self.client.delete(f"/api/organizations/{org_id}").status_code, 200)

        self.assertEqual(self.client.get("/api/organizations/").json(), [])
        archived = self.client.get("/api/organizations/?include_archived=true").json()
        self.assertTrue(archived[0]["archived"])
        self.assertEqual(self.client.delete("/api/organizations/missing").status_code, 404)

    def test_mapping_tables_and_options(self):
        org_id = self._create().json()["id"]

        saved = self.client.put(
            f"/api/organizations/{org_id}/mappings/users",
            json={"remote-1": "local-1", "remote-2": {"localId": "local-2", "localName": "Bo"}, "bad": []},
        )
        self.assertEqual(saved.json(), {"remote-1": "local-1", "remote-2": {"localId": "local-2", "localName": "Bo"}})
        self.assertEqual(self.client.get(f"/api/organizations/{org_id}/mappings/users").json(), saved.json())
        self.assertEqual(self.client.get(f"/api/organizations/{org_id}/mappings/widgets").status_code, 404)

        options = self.client.put(f"/api/organizations/{org_id}/options", json={"syncComments": False}).json()
        self.assertFalse(options["syncComments"])
        self.assertTrue(options["syncAttachments"])
        self.assertFalse(self.client.get(f"/api/organizations/{org_id}/options").json()["syncComments"])

    def test_rotate_incoming_secret(self):
        org_id = self._create().json()["id"]

        secret = self.client.post(f"/api/organizations/{org_id}/incoming-secret").json()["secret"]

        self.assertEqual(self.service.organizations.find_by_incoming_secret(secret).id, org_id)


class WebhookApiTests(ApiTestCase):
    def setUp(self):
        super().setUp()
        add_org(self.service, sync_direction="bidirectional", allowed_projects=["LOC"])
        self.service.organizations.set_incoming_secret("org1", "s3cret")

    def test_incoming_secret_by_query_or_header(self):
        payload = {"webhookEvent": "jira:issue_created", "issue": {"key": "REM-3", "fields": {"summary": "Hi"}}}

        by_query = self.client.post("/webhooks/incoming?secret=s3cret", json=payload)
        self.assertEqual(by_query.status_code, 200)
        by_header = self.client.post("/webhooks/incoming", json=payload, headers={"X-Sync-Secret": "s3cret"})
        self.assertEqual(by_header.status_code, 200)
        self.assertEqual(len(self.local.created), 1)

        rejected = self.client.post("/webhooks/incoming?secret=nope", json=payload)
        self.assertEqual(rejected.status_code, 401)

    def test_get_checks_secret_before_registration(self):
        ok = self.client.get("/webhooks/incoming", headers={"X-Sync-Secret": "s3cret"})
        self.assertEqual(ok.json(), {"status": "ok", "organization": "Acme", "bidirectional": True})
        self.assertEqual(self.client.get("/webhooks/incoming").status_code, 401)

    def test_local_event(self):
        self.local.add_issue("LOC-1")

        response = self.client.post("/webhooks/events", json={"eventType": "issue_created", "issue": {"key": "LOC-1"}})

        self.assertEqual(response.json()["status"], "success")
        self.assertEqual(self.service.mappings.get_remote("LOC-1", "org1"), "REM-1")


class SyncApiTests(ApiTestCase):
    def setUp(self):
        super().setUp()
        add_org(self.service)
        self.local.add_issue("LOC-1")

    def test_force_sync_and_mappings(self):
        forced = self.client.post("/api/sync/issues/LOC-1").json()
        self.assertTrue(forced["success"])
        self.assertEqual(forced["results"][0]["remoteKey"], "REM-1")

        mappings = self.client.get("/api/sync/issues/LOC-1/mappings").json()
        self.assertEqual(mappings["mappings"][0]["remoteKey"], "REM-1")
        self.assertFalse(mappings["syncing"])

    def test_force_sync_reports_failures(self):
        from syncbridge.services.jira_client import JiraApiError

        self.remote.failures["create_issue"] = JiraApiError(500, "down")

        forced = self.client.post("/api/sync/issues/LOC-1").json()

        self.assertFalse(forced["success"])
        self.assertIn("1 failed", forced["message"])

    def test_scheduled_config_round_trip_and_manual_run(self):
        saved = self.client.put("/api/sync/scheduled/config", json={"enabled": False, "syncScope": "all"}).json()
        self.assertEqual(saved["syncScope"], "all")
        self.assertFalse(self.client.get("/api/sync/scheduled/config").json()["enabled"])

        totals = self.client.post("/api/sync/scheduled/run").json()
        self.assertEqual(totals["created"], 1)
        self.assertEqual(self.client.get("/api/stats/scheduled").json()["created"], 1)

    def test_bulk_lifecycle(self):
        self.assertEqual(self.client.get("/api/sync/bulk").json(), {"status": "idle"})
        self.assertEqual(self.client.post("/api/sync/bulk/cancel").status_code, 409)
        self.assertEqual(self.client.post("/api/sync/bulk", json={"orgId": "missing"}).status_code, 404)

        started = self.client.post("/api/sync/bulk", json={"orgId": "org1"})
        self.assertEqual(started.status_code, 202)
        # TestClient runs background tasks before returning.
        self.assertEqual(self.client.get("/api/sync/bulk").json()["status"], "completed")
        self.assertEqual(self.service.mappings.get_remote("LOC-1", "org1"), "REM-1")

    def test_bulk_conflict_while_running(self):
        self.service.start_bulk_sync()
        self.assertEqual(self.client.post("/api/sync/bulk", json={}).status_code, 409)

    def test_diagnostics(self):
        report = self.client.get("/api/sync/diagnostics/org1").json()
        self.assertTrue(report["success"])
        self.assertEqual(report["steps"][0]["name"], "Load Configuration")
        self.assertEqual(self.client.get("/api/sync/diagnostics/missing").status_code, 404)

    def test_diagnostics_stop_at_failed_authentication(self):
        from syncbridge.services.jira_client import JiraApiError

        self.remote.failures["get_myself"] = JiraApiError(401, "bad token")

        report = self.client.get("/api/sync/diagnostics/org1").json()

        self.assertFalse(report["success"])
        self.assertEqual(report["steps"][-1]["name"], "Remote Authentication")

    def test_pending_link_retry(self):
        totals = self.client.post("/api/sync/pending-links/retry").json()
        self.assertEqual(totals["retried"], 0)


class StatsApiTests(ApiTestCase):
    def test_summary_audit_and_resets(self):
        add_org(self.service)
        self.local.add_issue("LOC-1")
        self.service.issues.sync_issue("LOC-1")
        self.service.stats.track_webhook_sync("update", False, "boom", "org1", "LOC-1")

        summary = self.client.get("/api/stats/summary").json()
        self.assertEqual(summary["organizations"][0]["mappedIssues"], 1)
        self.assertGreaterEqual(summary["totalSyncs"], 2)

        self.assertEqual(len(self.client.get("/api/stats/audit?limit=1").json()), 1)
        self.client.delete("/api/stats/audit")
        self.assertEqual(self.client.get("/api/stats/audit").json(), [])

        self.assertEqual(len(self.client.get("/api/stats/webhooks").json()["errors"]), 1)
        self.client.post("/api/stats/webhooks/clear-errors")
        self.assertEqual(self.client.get("/api/stats/webhooks").json()["errors"], [])

        self.client.post("/api/stats/api-usage/reset")
        self.assertEqual(self.client.get("/api/stats/api-usage").json()["totalCalls"], 0)


if __name__ == "__main__":
    unittest.main()
