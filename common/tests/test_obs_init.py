import logging
import unittest
from unittest.mock import patch

from prometheus_client import REGISTRY

import indexer_common.observability as obs
import indexer_common.observability.logging as log_mod
from indexer_common.observability.testing import reset_metrics


def _info_labels(metric_name):
    collector = REGISTRY._names_to_collectors[metric_name]
    [family] = collector.collect()
    [sample] = family.samples
    return sample.labels


class TestInitObservability(unittest.TestCase):
    def setUp(self):
        reset_metrics()
        self._was_configured = log_mod._configured
        log_mod._configured = False
        self.root = logging.getLogger()
        self._handlers = list(self.root.handlers)

    def tearDown(self):
        log_mod._configured = self._was_configured
        self.root.handlers = self._handlers
        reset_metrics()

    def _new_handlers(self):
        return [h for h in self.root.handlers if h not in self._handlers]

    @patch.dict("os.environ", {"ENVIRONMENT": "staging"}, clear=True)
    def test_worker_bootstrap_without_collector(self):
        with patch.object(obs, "init_tracing") as init_tracing:
            obs.init_observability("slot-indexer", "0.1.0")

        init_tracing.assert_not_called()
        self.assertTrue(any(isinstance(h.formatter, log_mod.JsonTraceFormatter) for h in self._new_handlers()))
        self.assertEqual(_info_labels("slot_indexer_info"), {"version": "0.1.0", "environment": "staging"})

    @patch.dict("os.environ", {"OTEL_EXPORTER_OTLP_ENDPOINT": "http://collector:4318"})
    def test_tracing_enabled_by_endpoint(self):
        with patch.object(obs, "init_tracing") as init_tracing:
            obs.init_observability("slot-indexer-api", "0.1.0", environment="prod")

        init_tracing.assert_called_once_with("slot-indexer-api")
        self.assertEqual(_info_labels("slot_indexer_api_info")["environment"], "prod")

    @patch.dict("os.environ", {"OTEL_EXPORTER_OTLP_ENDPOINT": "http://collector:4318"})
    def test_tracing_failure_does_not_stop_startup(self):
        with patch.object(obs, "init_tracing", side_effect=RuntimeError("exporter missing")):
            obs.init_observability("slot-indexer", "0.1.0")

        self.assertIn("slot_indexer_info", REGISTRY._names_to_collectors)

    @patch.dict("os.environ", {"ALERT_WEBHOOK_URL": "http://alerts.local/hook"})
    def test_webhook_tagged_with_service(self):
        with patch.object(obs, "init_tracing"):
            obs.init_observability("slot-indexer", "0.1.0")

        [hook] = [h for h in self._new_handlers() if isinstance(h, log_mod.WebhookAlertHandler)]
        self.assertEqual(hook.service, "slot-indexer")

    def test_repeated_bootstrap_keeps_one_handler_set(self):
        with patch.object(obs, "init_tracing"):
            obs.init_observability("slot-indexer", "0.1.0")
            handlers = list(self.root.handlers)
            obs.init_observability("slot-indexer-api", "0.1.0")

        self.assertEqual(self.root.handlers, handlers)


if __name__ == "__main__":
    unittest.main()
