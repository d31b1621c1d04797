import unittest

from session_sync.app_config import RuntimeEnv, _to_bool, parse_app_config


class AppConfigTests(unittest.TestCase):
    def test_defaults(self) -> None:
        app = parse_app_config({})
        self.assertEqual("http://127.0.0.1:9898", app.server_url)
        self.assertEqual("", app.proxy_path)
        self.assertEqual("default", app.instance_id)
        self.assertEqual(3, app.reconnect_max_attempts)
        self.assertEqual(1.0, app.reconnect_base_delay_seconds)
        self.assertEqual(5.0, app.reconnect_max_delay_seconds)
        self.assertFalse(app.show_reasoning)
        self.assertTrue(app.catalog_enabled)
        self.assertEqual("INFO", app.log_level)
        self.assertIsNone(app.log_consumers)

    def test_values_from_config(self) -> None:
        app = parse_app_config(
            {
                "ServerUrl": "http://backend:4096/",
                "ProxyPath": "/proxy/a",
                "InstanceId": "inst-a",
                "ReconnectMaxAttempts": 0,
                "ReconnectBaseDelaySeconds": -2,
                "ShowReasoning": "yes",
                "CatalogEnabled": "off",
                "DefaultAgent": " plan ",
                "DefaultProviderId": "anthropic",
                "DefaultModelId": "claude",
                "LogConsumers": [{"type": "console"}],
            }
        )
        self.assertEqual("http://backend:4096", app.server_url)
        self.assertEqual("/proxy/a", app.proxy_path)
        self.assertEqual("inst-a", app.instance_id)
        self.assertEqual(1, app.reconnect_max_attempts)
        self.assertEqual(0.0, app.reconnect_base_delay_seconds)
        self.assertTrue(app.show_reasoning)
        self.assertFalse(app.catalog_enabled)
        self.assertEqual(("plan", "anthropic", "claude"), (app.default_agent, app.default_provider_id, app.default_model_id))
        self.assertEqual([{"type": "console"}], app.log_consumers)

    def test_environment_overrides_server_url(self) -> None:
        app = parse_app_config({"ServerUrl": "http://a"}, RuntimeEnv(server_url="http://b/", auth_token="t"))
        self.assertEqual("http://b", app.server_url)

        app = parse_app_config({"ServerUrl": "http://a"}, RuntimeEnv(server_url=None, auth_token=None))
        self.assertEqual("http://a", app.server_url)

    def test_to_bool(self) -> None:
        self.assertTrue(_to_bool("TRUE"))
        self.assertTrue(_to_bool(1))
        self.assertFalse(_to_bool("0"))
        self.assertFalse(_to_bool(None))
        self.assertTrue(_to_bool(None, default=True))
        self.assertTrue(_to_bool("maybe"))


if __name__ == "__main__":
    unittest.main()
