import unittest

from fakes import FakeJira, add_org, build_service


def _description(*paragraphs):
    return {
        "type": "doc",
        "version": 1,
        "content": [{"type": "paragraph", "content": [{"type": "text", "text": p}]} for p in paragraphs],
    }


class IssueSyncTestCase(unittest.TestCase):
    def setUp(self):
        self.local = FakeJira(base_url="https://local.example.net", project_key="LOC", account_id="local-bot")
        self.remotes = {}
        self.service = build_service(local=self.local, remotes=self.remotes)

    def remote(self, org_id="org1"):
        return self.remotes[org_id]


class CreateTests(IssueSyncTestCase):
    def test_first_sync_creates_remote_issue_and_cross_references(self):
        from syncbridge.services.adf import extract_text

        add_org(self.service)
        self.local.add_issue(
            "LOC-1",
            summary="Login page crashes",
            description=_description("Steps to reproduce"),
            labels=["bug"],
            priority={"name": "High"},
            status={"id": "3", "name": "In Progress"},
        )

        results = self.service.issues.sync_issue("LOC-1")

        self.assertEqual(len(results), 1)
        result = results[0]
        self.assertEqual(result["operation"], "create")
        self.assertEqual(result["status"], "success")
        self.assertEqual(result["remoteKey"], "REM-1")
        self.assertEqual(result["states"][:3], ["unmapped", "creating", "mapped"])

        remote_issue = self.remote().get_issue("REM-1")["fields"]
        self.assertEqual(remote_issue["summary"], "Login page crashes")
        self.assertEqual(remote_issue["project"], {"key": "REM"})
        self.assertEqual(remote_issue["labels"], ["bug"])
        self.assertEqual(remote_issue["priority"], {"name": "High"})
        self.assertEqual(remote_issue["status"]["name"], "In Progress")
        self.assertTrue(extract_text(remote_issue["description"], skip_cross_reference=False).startswith("🔗 LOC-1 ↔ REM-1"))

        self.assertEqual(self.service.mappings.get_remote("LOC-1", "org1"), "REM-1")
        self.assertEqual(self.service.mappings.get_local("REM-1", "org1"), "LOC-1")

        local_description = self.local.get_issue("LOC-1")["fields"]["description"]
        self.assertEqual(len(local_description["content"]), 2)
        self.assertIn("REM-1", local_description["content"][0]["content"][0]["text"])

        audit = self.service.stats.get_audit_log()
        self.assertEqual(audit[0]["action"], "create")
        self.assertEqual(audit[0]["targetIssue"], "REM-1")
        self.assertEqual(self.service.stats.get_webhook_sync_stats()["issuesCreated"], 1)
        self.assertFalse(self.service.flags.is_syncing("LOC-1"))

    def test_second_sync_updates_instead_of_creating(self):
        add_org(self.service)
        self.local.add_issue("LOC-1")

        self.service.issues.sync_issue("LOC-1")
        results = self.service.issues.sync_issue("LOC-1")

        self.assertEqual(results[0]["operation"], "update")
        self.assertEqual(len(self.remote().created), 1)

    def test_user_and_field_mappings_shape_the_payload(self):
        from syncbridge.services.field_mapping import parse_mapping_table

        add_org(self.service)
        self.service.organizations.save_table("org1", "userMappings", parse_mapping_table({"remote-alice": "human-1"}))
        self.service.organizations.save_table(
            "org1", "fieldMappings", parse_mapping_table({"customfield_900": "customfield_100"})
        )
        self.service.organizations.save_table(
            "org1", "issueTypeMappings", parse_mapping_table({"20": "10001"})
        )
        self.local.add_issue(
            "LOC-1",
            assignee={"accountId": "human-1"},
            reporter={"accountId": "unmapped-user"},
            customfield_100="Team Red",
        )

        self.service.issues.sync_issue("LOC-1")

        payload = self.remote().created[0]
        self.assertEqual(payload["assignee"], {"accountId": "remote-alice"})
        self.assertNotIn("reporter", payload)
        self.assertEqual(payload["customfield_900"], "Team Red")
        self.assertEqual(payload["issuetype"], {"id": "20"})

    def test_attachments_are_copied_and_media_rewritten(self):
        add_org(self.service)
        self.local.add_issue("LOC-1")
        attachment = self.local.add_attachment("LOC-1", "screen.png", b"\x89PNG")
        description = {
            "type": "doc",
            "version": 1,
            "content": [{"type": "mediaSingle", "content": [{"type": "media", "attrs": {"id": attachment["id"]}}]}],
        }
        self.local.update_issue("LOC-1", {"description": description})

        self.service.issues.sync_issue("LOC-1")

        remote_attachments = self.remote().get_attachments("REM-1")
        self.assertEqual([a["filename"] for a in remote_attachments], ["screen.png"])
        remote_description = self.remote().get_issue("REM-1")["fields"]["description"]
        media = remote_description["content"][1]["content"][0]
        self.assertEqual(media["attrs"]["id"], remote_attachments[0]["id"])

    def test_cross_reference_can_be_disabled(self):
        from syncbridge.services.organizations import SyncOptions

        add_org(self.service)
        self.service.organizations.save_options("org1", SyncOptions(cross_reference=False))
        self.local.add_issue("LOC-1", description=_description("Body"))

        self.service.issues.sync_issue("LOC-1")

        self.assertEqual(self.local.get_issue("LOC-1")["fields"]["description"], _description("Body"))
        self.assertEqual(self.remote().updates, [])

    def test_create_failure_is_reported_and_leaves_no_mapping(self):
        from syncbridge.services.jira_client import JiraApiError

        add_org(self.service)
        self.service.get_client(self.service.organizations.get("org1")).failures["create_issue"] = JiraApiError(
            400, "summary required"
        )
        self.local.add_issue("LOC-1")

        results = self.service.issues.sync_issue("LOC-1")

        self.assertEqual(results[0]["status"], "failure")
        self.assertIsNone(self.service.mappings.get_remote("LOC-1", "org1"))
        self.assertEqual(self.service.stats.get_webhook_sync_stats()["errors"][0]["issueKey"], "LOC-1")


class RecreateTests(IssueSyncTestCase):
    def test_deleted_remote_issue_is_recreated_with_new_mapping(self):
        add_org(self.service)
        self.local.add_issue("LOC-1")
        self.service.issues.sync_issue("LOC-1")
        self.remote().remove_issue("REM-1")

        results = self.service.issues.sync_issue("LOC-1")

        self.assertEqual(results[0]["operation"], "recreate")
        self.assertIn("stale_remote_detected", results[0]["states"])
        new_key = results[0]["remoteKey"]
        self.assertNotEqual(new_key, "REM-1")
        self.assertEqual(self.service.mappings.get_remote("LOC-1", "org1"), new_key)
        self.assertIsNone(self.service.mappings.get_local("REM-1", "org1"))

        entry = self.service.stats.get_audit_log()[0]
        self.assertEqual(entry["type"], "recreate")
        self.assertEqual(entry["previousRemoteKey"], "REM-1")

    def test_recreate_disabled_updates_the_stale_key(self):
        from syncbridge.services.organizations import SyncOptions

        add_org(self.service)
        self.service.organizations.save_options("org1", SyncOptions(recreate_deleted_issues=False))
        self.local.add_issue("LOC-1")
        self.service.issues.sync_issue("LOC-1")
        self.remote().remove_issue("REM-1")

        results = self.service.issues.sync_issue("LOC-1")

        self.assertEqual(results[0]["operation"], "update")
        self.assertEqual(results[0]["status"], "failure")
        self.assertEqual(self.service.mappings.get_remote("LOC-1", "org1"), "REM-1")

    def test_ambiguous_existence_check_keeps_the_mapping_when_failing_open(self):
        from syncbridge.services.jira_client import JiraApiError

        add_org(self.service)
        self.local.add_issue("LOC-1")
        self.service.issues.sync_issue("LOC-1")
        remote = self.remote()
        remote.failures["get_issue"] = JiraApiError(503, "maintenance")
        remote.failures["update_issue"] = JiraApiError(503, "maintenance")

        results = self.service.issues.sync_issue("LOC-1")

        self.assertEqual(results[0]["operation"], "update")
        self.assertEqual(len(remote.created), 1)
        self.assertEqual(self.service.mappings.get_remote("LOC-1", "org1"), "REM-1")


class UpdateTests(IssueSyncTestCase):
    def setUp(self):
        super().setUp()
        add_org(self.service)
        self.local.add_issue(
            "LOC-1",
            assignee={"accountId": "human-1"},
            components=[{"name": "API"}],
        )
        self.service.issues.sync_issue("LOC-1")

    def test_cleared_fields_are_sent_as_clears(self):
        self.local.update_issue("LOC-1", {"assignee": None, "components": [], "summary": "Renamed"})

        self.service.issues.sync_issue("LOC-1")

        _, payload = self.remote().updates[-1]
        self.assertIsNone(payload["assignee"])
        self.assertIsNone(payload["parent"])
        self.assertEqual(payload["components"], [])
        self.assertEqual(payload["summary"], "Renamed")
        self.assertEqual(self.remote().get_issue("REM-1")["fields"]["summary"], "Renamed")

    def test_status_change_is_replayed_once(self):
        self.local.update_issue("LOC-1", {"status": {"id": "5", "name": "Done"}})

        self.service.issues.sync_issue("LOC-1")
        self.service.issues.sync_issue("LOC-1")

        self.assertEqual(self.remote().transitions_done, [("REM-1", "Done")])

    def test_unknown_status_is_a_warning(self):
        self.local.update_issue("LOC-1", {"status": {"id": "77", "name": "Blocked"}})

        results = self.service.issues.sync_issue("LOC-1")

        self.assertEqual(results[0]["status"], "partial")
        self.assertEqual(results[0]["details"]["transitions"]["failed"], 1)

    def test_status_mapping_is_used_when_names_differ(self):
        from syncbridge.services.field_mapping import parse_mapping_table

        self.service.organizations.save_table(
            "org1", "statusMappings", parse_mapping_table({"5": {"localId": "77", "localName": "Shipped"}})
        )
        self.local.update_issue("LOC-1", {"status": {"id": "77", "name": "Shipped"}})

        results = self.service.issues.sync_issue("LOC-1")

        self.assertEqual(results[0]["status"], "success")
        self.assertEqual(self.remote().transitions_done, [("REM-1", "Done")])


class ParentTests(IssueSyncTestCase):
    def test_parent_is_synced_first(self):
        add_org(self.service)
        self.local.add_issue("LOC-1", summary="Epic")
        self.local.add_issue("LOC-2", summary="Story", parent={"key": "LOC-1"})

        results = self.service.issues.sync_issue("LOC-2")

        created = self.remote().created
        self.assertEqual([c["summary"] for c in created], ["Epic", "Story"])
        self.assertEqual(created[1]["parent"], {"key": "REM-1"})
        self.assertEqual(results[0]["remoteKey"], "REM-2")
        self.assertEqual(self.service.mappings.get_remote("LOC-1", "org1"), "REM-1")

    def test_depth_cap_defers_ancestors_and_resyncs_later(self):
        self.service = build_service(local=self.local, remotes=self.remotes, max_parent_depth=1)
        add_org(self.service)
        self.local.add_issue("LOC-1", summary="Initiative")
        self.local.add_issue("LOC-2", summary="Epic", parent={"key": "LOC-1"})
        self.local.add_issue("LOC-3", summary="Story", parent={"key": "LOC-2"})

        self.service.issues.sync_issue("LOC-3")

        created = self.remote().created
        self.assertEqual([c["summary"] for c in created], ["Epic", "Story"])
        self.assertNotIn("parent", created[0])
        self.assertIsNone(self.service.mappings.get_remote("LOC-1", "org1"))

        self.service.issues.sync_issue("LOC-1")

        epic_remote = self.service.mappings.get_remote("LOC-2", "org1")
        initiative_remote = self.service.mappings.get_remote("LOC-1", "org1")
        epic_updates = [fields for key, fields in self.remote().updates if key == epic_remote and "parent" in fields]
        self.assertEqual(epic_updates[-1]["parent"], {"key": initiative_remote})


class GuardTests(IssueSyncTestCase):
    def test_record_being_synced_is_skipped(self):
        add_org(self.service)
        self.local.add_issue("LOC-1")
        self.service.flags.mark_syncing("LOC-1")

        results = self.service.issues.sync_issue("LOC-1")

        self.assertEqual(results[0]["status"], "skipped")
        self.assertEqual(self.remotes, {})

    def test_record_created_from_an_org_is_not_echoed_back(self):
        add_org(self.service)
        add_org(self.service, org_id="org2", name="Globex", remote_project_key="GLX")
        self.local.add_issue("LOC-1")
        self.service.kv.set("created-from-remote:LOC-1", "org1")

        results = {r["orgId"]: r for r in self.service.issues.sync_issue("LOC-1")}

        self.assertEqual(results["org1"]["status"], "skipped")
        self.assertEqual(results["org2"]["operation"], "create")
        self.assertNotIn("org1", self.remotes)

    def test_project_filter_and_jql_filter(self):
        add_org(self.service, allowed_projects=["OPS"])
        add_org(self.service, org_id="org2", name="Globex", jql_filter="labels = shared")
        self.local.add_issue("LOC-1")
        self.local.filter_excluded.add("LOC-1")

        results = {r["orgId"]: r for r in self.service.issues.sync_issue("LOC-1")}

        self.assertIn("not in allowed list", results["org1"]["skippedReason"])
        self.assertEqual(results["org2"]["skippedReason"], "does not match organization filter")

    def test_archived_and_credential_less_orgs_are_skipped(self):
        add_org(self.service, archived=True)
        add_org(self.service, org_id="org2", name="Globex", token=None)
        self.local.add_issue("LOC-1")

        results = {r["orgId"]: r for r in self.service.issues.sync_issue("LOC-1")}

        self.assertEqual(results["org1"]["skippedReason"], "organization archived")
        self.assertEqual(results["org2"]["skippedReason"], "organization has no credentials")

    def test_one_failing_org_does_not_block_others(self):
        from syncbridge.services.jira_client import JiraApiError

        add_org(self.service)
        org2 = add_org(self.service, org_id="org2", name="Globex", remote_project_key="GLX")
        self.service.get_client(org2).failures["create_issue"] = JiraApiError(500, "boom")
        self.local.add_issue("LOC-1")

        results = {r["orgId"]: r for r in self.service.issues.sync_issue("LOC-1")}

        self.assertEqual(results["org1"]["status"], "success")
        self.assertEqual(results["org2"]["status"], "failure")
        self.assertEqual(self.service.mappings.get_remote("LOC-1", "org1"), "REM-1")

    def test_no_organizations(self):
        self.local.add_issue("LOC-1")
        self.assertEqual(self.service.issues.sync_issue("LOC-1"), [])


class LegacyOrgTests(IssueSyncTestCase):
    def test_legacy_config_syncs_into_unprefixed_namespace(self):
        self.service.kv.set(
            "syncConfig",
            {"remoteUrl": "https://legacy.example.net", "remoteEmail": "a@b.c", "remoteProjectKey": "LEG"},
        )
        self.service.kv.set_secret("secret:legacy:token", "tok")
        self.local.add_issue("LOC-1")

        results = self.service.issues.sync_issue("LOC-1")

        self.assertIsNone(results[0]["orgId"])
        self.assertEqual(self.service.mappings.get_remote("LOC-1"), "LEG-1")
        self.assertIsNone(self.service.mappings.get_remote("LOC-1", "legacy"))


if __name__ == "__main__":
    unittest.main()
