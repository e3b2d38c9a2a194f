import threading
import unittest
from unittest.mock import MagicMock

from batch_routing.core.route_types import RouteEvent, RouteEventType
from batch_routing.services.event_bus import RouteEventBus


class TestRouteEventBus(unittest.TestCase):

    def setUp(self):
        self.bus = RouteEventBus()

    def test_publish_reaches_matching_handlers(self):
        handler = MagicMock()
        other = MagicMock()
        self.bus.subscribe(RouteEventType.ORDER_ADDED, handler)
        self.bus.subscribe(RouteEventType.ORDER_REMOVED, other)

        event = RouteEvent(batch_id='b1', type=RouteEventType.ORDER_ADDED)
        delivered = self.bus.publish(event)

        self.assertEqual(delivered, 1)
        handler.assert_called_once_with(event)
        other.assert_not_called()

    def test_batch_filter(self):
        handler = MagicMock()
        self.bus.subscribe(RouteEventType.TRAFFIC_INCIDENT, handler, batch_id='b1')

        self.bus.publish(RouteEvent(batch_id='b2', type=RouteEventType.TRAFFIC_INCIDENT))
        handler.assert_not_called()

        self.bus.publish(RouteEvent(batch_id='b1', type=RouteEventType.TRAFFIC_INCIDENT))
        handler.assert_called_once()

    def test_cancel_detaches_handler(self):
        handler = MagicMock()
        subscription = self.bus.subscribe(RouteEventType.ORDER_ADDED, handler, batch_id='b1')
        self.assertEqual(self.bus.subscriber_count(batch_id='b1'), 1)

        subscription.cancel()
        subscription.cancel()  # idempotent

        self.bus.publish(RouteEvent(batch_id='b1', type=RouteEventType.ORDER_ADDED))
        handler.assert_not_called()
        self.assertEqual(self.bus.subscriber_count(), 0)

    def test_failing_handler_does_not_block_others(self):
        failing = MagicMock(side_effect=RuntimeError("boom"))
        healthy = MagicMock()
        self.bus.subscribe(RouteEventType.ORDER_ADDED, failing)
        self.bus.subscribe(RouteEventType.ORDER_ADDED, healthy)

        with self.assertLogs('batch_routing.services.event_bus', level='ERROR'):
            delivered = self.bus.publish(RouteEvent(batch_id='b1', type=RouteEventType.ORDER_ADDED))

        self.assertEqual(delivered, 1)
        healthy.assert_called_once()

    def test_concurrent_subscribe_and_publish(self):
        received = []
        lock = threading.Lock()

        def handler(event):
            with lock:
                received.append(event.id)

        def worker():
            for _ in range(50):
                sub = self.bus.subscribe(RouteEventType.WEATHER_UPDATE, handler)
                self.bus.publish(RouteEvent(batch_id='b1', type=RouteEventType.WEATHER_UPDATE))
                sub.cancel()

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(self.bus.subscriber_count(), 0)
        self.assertGreaterEqual(len(received), 200)


if __name__ == '__main__':
    unittest.main()
