import unittest

from fakes import FakeJira, add_org, build_service


class EventDispatchTests(unittest.TestCase):
    def setUp(self):
        self.local = FakeJira(base_url="https://local.example.net", project_key="LOC", account_id="local-bot")
        self.remote = FakeJira(project_key="REM")
        self.service = build_service(local=self.local, remotes={"org1": self.remote})
        add_org(self.service)

    def test_platform_aliases_are_normalized(self):
        from syncbridge.services.events import ISSUE_CREATED, normalize_event_type

        self.assertEqual(normalize_event_type("avi:jira:created:issue"), ISSUE_CREATED)
        self.assertEqual(normalize_event_type("issue_created"), ISSUE_CREATED)

    def test_unknown_event_is_ignored(self):
        response = self.service.handle_event({"eventType": "sprint_started"})
        self.assertEqual(response["status"], "ignored")

    def test_handler_errors_are_reported(self):
        response = self.service.handle_event({"eventType": "issue_updated", "issue": {}})
        self.assertEqual(response["status"], "error")
        self.assertIn("no issue key", response["error"])

    def test_created_then_updated_event_does_not_double_create(self):
        self.local.add_issue("LOC-1")

        created = self.service.handle_event({"eventType": "issue_created", "issue": {"key": "LOC-1"}})
        updated = self.service.handle_event({"eventType": "avi:jira:updated:issue", "issue": {"key": "LOC-1"}})

        self.assertEqual(created["result"][0]["operation"], "create")
        self.assertEqual(updated["result"][0]["operation"], "update")
        self.assertEqual(len(self.remote.created), 1)

    def test_update_right_after_create_is_skipped_while_unmapped(self):
        self.local.add_issue("LOC-1")
        self.service.recent.mark_created("LOC-1")

        response = self.service.handle_event({"eventType": "issue_updated", "issue": {"key": "LOC-1"}})

        self.assertEqual(response["result"], [])
        self.assertEqual(self.remote.created, [])

    def test_delete_removes_remote_issue_and_mappings(self):
        self.local.add_issue("LOC-1")
        self.service.handle_event({"eventType": "issue_created", "issue": {"key": "LOC-1"}})

        response = self.service.handle_event({"eventType": "issue_deleted", "issue": {"key": "LOC-1"}})

        self.assertEqual(response["result"], [{"orgId": "org1", "remoteKey": "REM-1", "deleted": True}])
        self.assertEqual(self.remote.deleted, ["REM-1"])
        self.assertIsNone(self.service.mappings.get_remote("LOC-1", "org1"))

    def test_delete_failure_keeps_mapping(self):
        from syncbridge.services.jira_client import JiraApiError

        self.local.add_issue("LOC-1")
        self.service.handle_event({"eventType": "issue_created", "issue": {"key": "LOC-1"}})
        self.remote.failures["delete_issue"] = JiraApiError(403, "forbidden")

        response = self.service.handle_event({"eventType": "issue_deleted", "issue": {"key": "LOC-1"}})

        self.assertFalse(response["result"][0]["deleted"])
        self.assertEqual(self.service.mappings.get_remote("LOC-1", "org1"), "REM-1")

    def test_link_created_syncs_target_before_source(self):
        self.local.add_issue("LOC-2")
        self.local.add_issue("LOC-1")
        self.local.create_link("Blocks", "LOC-1", "LOC-2")

        response = self.service.handle_event(
            {
                "eventType": "avi:jira:created:issuelink",
                "issueLink": {"id": "9", "sourceIssueKey": "LOC-1", "destinationIssueKey": "LOC-2"},
            }
        )

        self.assertEqual(response["status"], "success")
        self.assertEqual([c["summary"] for c in self.remote.created], ["Summary of LOC-2", "Summary of LOC-1"])
        remote_source = self.service.mappings.get_remote("LOC-1", "org1")
        remote_target = self.service.mappings.get_remote("LOC-2", "org1")
        self.assertIn(("Blocks", remote_source, remote_target), self.remote.created_links)

    def test_link_created_resolves_issue_ids(self):
        self.local.add_issue("LOC-1")
        issue_id = self.local.get_issue("LOC-1")["id"]
        self.local.issues[issue_id] = self.local.issues["LOC-1"]

        response = self.service.handle_event(
            {"eventType": "link_created", "issueLink": {"id": "9", "sourceIssueId": issue_id}}
        )

        self.assertEqual(list(response["result"]), ["source"])
        self.assertEqual(len(self.remote.created), 1)

    def test_link_deleted_removes_remote_link(self):
        self.local.add_issue("LOC-1")
        self.local.add_issue("LOC-2")
        self.service.handle_event({"eventType": "issue_created", "issue": {"key": "LOC-1"}})
        self.service.handle_event({"eventType": "issue_created", "issue": {"key": "LOC-2"}})
        self.remote.create_link("Blocks", "REM-1", "REM-2")

        response = self.service.handle_event(
            {
                "eventType": "link_deleted",
                "issueLink": {
                    "id": "9",
                    "sourceIssueKey": "LOC-1",
                    "destinationIssueKey": "LOC-2",
                    "issueLinkType": {"name": "Blocks"},
                },
            }
        )

        self.assertEqual(response["result"], [{"orgId": "org1", "deleted": True}])
        self.assertEqual(self.remote.get_issue_links("REM-1"), [])

    def test_comment_and_attachment_events(self):
        self.local.add_issue("LOC-1")
        self.service.handle_event({"eventType": "issue_created", "issue": {"key": "LOC-1"}})
        comment = self.local.add_local_comment("LOC-1", "New info")
        self.local.add_attachment("LOC-1", "dump.txt", b"data")

        self.service.handle_event(
            {"eventType": "comment_created", "issue": {"key": "LOC-1"}, "comment": {"id": comment["id"]}}
        )
        self.service.handle_event({"eventType": "attachment_created", "attachment": {"issueKey": "LOC-1"}})

        self.assertEqual(len(self.remote.get_comments("REM-1")), 1)
        self.assertEqual([a["filename"] for a in self.remote.get_attachments("REM-1")], ["dump.txt"])

    def test_tick_runs_scheduled_sweep(self):
        self.local.add_issue("LOC-1")

        response = self.service.handle_event({"eventType": "tick"})

        self.assertEqual(response["result"]["created"], 1)


if __name__ == "__main__":
    unittest.main()
