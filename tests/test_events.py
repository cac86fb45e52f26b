import unittest


class TestEventChannel(unittest.TestCase):
    def test_subscribe_publish_unsubscribe(self) -> None:
        from clibridge.kernel.events import EventChannel

        ch = EventChannel("demo")
        seen = []
        unsubscribe = ch.subscribe(lambda p: seen.append(("a", p)))
        ch.subscribe(lambda p: seen.append(("b", p)))
        ch.publish(1)
        self.assertEqual(seen, [("a", 1), ("b", 1)])

        unsubscribe()
        ch.publish(2)
        self.assertEqual(seen[-1], ("b", 2))
        self.assertEqual(ch.listener_count(), 1)

    def test_once_fires_a_single_time(self) -> None:
        from clibridge.kernel.events import EventChannel

        ch = EventChannel("demo")
        seen = []
        ch.once(seen.append)
        ch.publish("x")
        ch.publish("y")
        self.assertEqual(seen, ["x"])
        self.assertEqual(ch.listener_count(), 0)

    def test_failing_handler_does_not_stop_others(self) -> None:
        from clibridge.kernel.events import EventChannel

        ch = EventChannel("demo")
        seen = []

        def _boom(_p: object) -> None:
            raise RuntimeError("boom")

        ch.subscribe(_boom)
        ch.subscribe(seen.append)
        with self.assertLogs("clibridge.events", level="ERROR"):
            ch.publish("ok")
        self.assertEqual(seen, ["ok"])


class TestEventBus(unittest.TestCase):
    def test_named_topics(self) -> None:
        from clibridge.kernel.events import EventBus

        bus = EventBus(["one", "two"])
        seen = []
        bus.on("one", seen.append)
        bus.emit("one", {"n": 1})
        bus.emit("two", {"n": 2})
        self.assertEqual(seen, [{"n": 1}])
        self.assertEqual(bus.listener_count("one"), 1)

        bus.clear()
        self.assertEqual(bus.listener_count("one"), 0)

    def test_unknown_topic_raises(self) -> None:
        from clibridge.kernel.events import EventBus

        bus = EventBus(["one"])
        with self.assertRaises(KeyError):
            bus.emit("nope", {})
        with self.assertRaises(KeyError):
            bus.on("nope", lambda _p: None)


if __name__ == "__main__":
    unittest.main()
