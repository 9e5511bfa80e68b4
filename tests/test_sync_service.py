import unittest

from fakes import add_org, make_settings


class ClientCacheTests(unittest.TestCase):
    def setUp(self):
        from syncbridge.services.kvs import MemoryKeyValueStore
        from syncbridge.services.sync_service import SyncService

        self.built = []

        def factory(org):
            self.built.append(org.remote_api_token)
            return object()

        self.service = SyncService(
            MemoryKeyValueStore(), config=make_settings(), local_client=object(), client_factory=factory
        )

    def test_client_reused_until_credentials_change(self):
        org = add_org(self.service, token="first")

        client = self.service.get_client(org)
        self.assertIs(self.service.get_client(self.service.organizations.get("org1")), client)

        rotated = add_org(self.service, token="second")
        self.assertIsNot(self.service.get_client(rotated), client)
        self.assertEqual(self.built, ["first", "second"])

    def test_real_client_built_without_factory(self):
        from syncbridge.services.jira_client import JiraClient
        from syncbridge.services.kvs import MemoryKeyValueStore
        from syncbridge.services.sync_service import SyncService

        service = SyncService(MemoryKeyValueStore(), config=make_settings(), local_client=object())
        org = add_org(service)

        client = service.get_client(org)

        self.assertIsInstance(client, JiraClient)
        self.assertEqual(client.org_id, "org1")


class ServiceSingletonTests(unittest.TestCase):
    def tearDown(self):
        from syncbridge.services.sync_service import reset_sync_service

        reset_sync_service()

    def test_reset_installs_given_service(self):
        from syncbridge.services.sync_service import get_sync_service, reset_sync_service

        marker = object()
        reset_sync_service(marker)

        self.assertIs(get_sync_service(), marker)


if __name__ == "__main__":
    unittest.main()
