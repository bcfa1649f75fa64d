#!/usr/bin/env python3
"""
Unit tests for the engine event channel
"""

import asyncio
import dataclasses
import sys
import threading
import unittest
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from quizvoice.voice.events import Event, EventPubSub, EventType


class TestEvent(unittest.TestCase):

    def test_factories(self):
        result = Event.result(3, "paris", True)
        self.assertEqual(result.type, EventType.RESULT)
        self.assertEqual(result.session_id, 3)
        self.assertEqual(result.data, {"transcript": "paris", "is_final": True})

        error = Event.error(3, "network", "offline")
        self.assertEqual(error.data, {"code": "network", "message": "offline"})

        self.assertEqual(Event.end(3).data, {})
        self.assertEqual(Event.volume(3, 4.5).data, {"level": 4.5})

    def test_detached_copy_has_own_payload(self):
        original = Event.result(1, "abc", False)
        copy = original.detached()
        copy.data["transcript"] = "changed"

        self.assertEqual(original.data["transcript"], "abc")
        self.assertEqual(copy.timestamp, original.timestamp)
        self.assertEqual(copy.session_id, 1)

    def test_fields_cannot_be_reassigned(self):
        event = Event.end(4)
        with self.assertRaises(dataclasses.FrozenInstanceError):
            event.session_id = 5
        self.assertEqual(event.session_id, 4)


class TestEventPubSub(unittest.IsolatedAsyncioTestCase):

    async def test_subscribe_before_publish(self):
        pubsub = EventPubSub()
        queue = pubsub.subscribe()
        pubsub.publish_nowait(Event.end(1))

        event = await asyncio.wait_for(queue.get(), timeout=1)
        self.assertEqual(event.type, EventType.END)

    async def test_poll_yields_in_order(self):
        pubsub = EventPubSub()
        pubsub.set_event_loop(asyncio.get_running_loop())
        queue = pubsub.subscribe()

        for i in range(3):
            pubsub.publish_nowait(Event.volume(1, i))

        received = []

        events = pubsub.poll(queue)

        async def consume():
            async for event in events:
                received.append(event.data["level"])
                if len(received) == 3:
                    break

        await asyncio.wait_for(consume(), timeout=1)
        await events.aclose()
        self.assertEqual(received, [0, 1, 2])
        self.assertEqual(pubsub.subscriber_count, 0)

    async def test_publish_from_other_thread(self):
        pubsub = EventPubSub()
        pubsub.set_event_loop(asyncio.get_running_loop())
        queue = pubsub.subscribe()

        thread = threading.Thread(target=pubsub.publish_nowait, args=(Event.result(2, "hi", True),))
        thread.start()
        thread.join()

        event = await asyncio.wait_for(queue.get(), timeout=1)
        self.assertEqual(event.session_id, 2)

    async def test_history_is_bounded(self):
        pubsub = EventPubSub(max_history=3)
        for i in range(5):
            pubsub.publish_nowait(Event.volume(1, i))

        recent = pubsub.get_recent_events()
        self.assertEqual([e.data["level"] for e in recent], [2, 3, 4])

        pubsub.clear_history()
        self.assertEqual(pubsub.get_recent_events(), [])

    async def test_unsubscribe(self):
        pubsub = EventPubSub()
        queue = pubsub.subscribe()
        pubsub.unsubscribe(queue)
        pubsub.publish_nowait(Event.end(1))

        self.assertTrue(queue.empty())
        self.assertEqual(pubsub.subscriber_count, 0)


if __name__ == '__main__':
    unittest.main()
