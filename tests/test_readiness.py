import threading
import time
import unittest


class TestAgentKindCatalog(unittest.TestCase):
    def test_parse_known_and_open_kinds(self) -> None:
        from clibridge.kernel.patterns import AgentKind

        self.assertIs(AgentKind.parse("Claude"), AgentKind.CLAUDE)
        self.assertIs(AgentKind.parse(""), AgentKind.CUSTOM)
        self.assertIs(AgentKind.parse(None), AgentKind.CUSTOM)
        self.assertEqual(AgentKind.parse("my-tool"), "my-tool")

    def test_default_sets_and_fallback(self) -> None:
        from clibridge.kernel.patterns import ReadinessCatalog

        cat = ReadinessCatalog()
        sizes = {k: cat.get(k).buffer_size for k in ("claude", "chatgpt", "gemini", "openai", "custom", "shell")}
        self.assertEqual(
            sizes,
            {"claude": 500, "chatgpt": 500, "gemini": 800, "openai": 500, "custom": 1000, "shell": 200},
        )
        self.assertFalse(cat.has("aider"))
        self.assertEqual(cat.get("aider").kind, "custom")

    def test_register_and_unregister(self) -> None:
        from clibridge.kernel.patterns import ReadinessCatalog

        cat = ReadinessCatalog()
        entry = cat.register("aider", [r"aider>\s*$"], buffer_size=300)
        self.assertEqual(entry.kind, "aider")
        self.assertTrue(cat.has("aider"))
        self.assertEqual(cat.get("AIDER").buffer_size, 300)

        cat.unregister("aider")
        self.assertFalse(cat.has("aider"))
        with self.assertRaises(ValueError):
            cat.unregister("custom")


class TestReadinessClassifier(unittest.TestCase):
    def test_shell_prompt_becomes_ready_after_debounce(self) -> None:
        from clibridge.kernel.readiness import ReadinessClassifier

        clf = ReadinessClassifier("shell", debounce_ms=20)
        results = []
        clf.ready.subscribe(results.append)
        clf.process("$ ")
        self.assertFalse(clf.is_ready())
        self.assertTrue(clf.wait_until_ready(1.0))
        self.assertTrue(clf.is_ready())
        self.assertEqual(len(results), 1)
        self.assertEqual(results[0].agent_type, "shell")
        self.assertEqual(results[0].confidence, 0.9)
        self.assertEqual(results[0].match, "$")

    def test_only_flips_are_published(self) -> None:
        from clibridge.kernel.readiness import ReadinessClassifier

        clf = ReadinessClassifier("shell", debounce_ms=10)
        ready, not_ready = [], []
        clf.ready.subscribe(ready.append)
        clf.not_ready.subscribe(not_ready.append)

        clf.process("$ ")
        clf.flush()
        clf.process(" ")
        clf.flush()
        self.assertEqual(len(ready), 1)

        clf.process("running\nstill going")
        clf.flush()
        self.assertEqual(len(not_ready), 1)
        self.assertFalse(clf.is_ready())
        self.assertEqual(not_ready[0].confidence, 0.9)

    def test_open_custom_kind_uses_custom_set(self) -> None:
        from clibridge.kernel.readiness import ReadinessClassifier

        clf = ReadinessClassifier("mystery-cli", debounce_ms=10)
        results = []
        clf.ready.subscribe(results.append)
        clf.process("[READY]")
        clf.flush()
        self.assertEqual(clf.agent_type, "mystery-cli")
        self.assertEqual(results[0].confidence, 0.7)
        self.assertEqual(clf.buffer_info()["max_size"], 1000)

    def test_type_change_resets_readiness(self) -> None:
        from clibridge.kernel.readiness import ReadinessClassifier

        clf = ReadinessClassifier("shell", debounce_ms=10)
        clf.process("$ ")
        clf.flush()
        self.assertTrue(clf.is_ready())

        clf.set_type("claude")
        self.assertFalse(clf.is_ready())
        self.assertEqual(clf.buffer(), "")
        info = clf.buffer_info()
        self.assertEqual(info["agent_type"], "claude")
        self.assertEqual(info["max_size"], 500)

    def test_buffer_is_bounded_by_kind(self) -> None:
        from clibridge.kernel.readiness import ReadinessClassifier

        clf = ReadinessClassifier("shell", debounce_ms=1000)
        clf.process("x" * 500)
        self.assertEqual(len(clf.buffer()), 200)
        clf.close()

    def test_wait_until_ready_returns_at_once_when_ready(self) -> None:
        from clibridge.kernel.readiness import ReadinessClassifier

        clf = ReadinessClassifier("shell", debounce_ms=10)
        clf.process("$ ")
        clf.flush()
        started = time.monotonic()
        self.assertTrue(clf.wait_until_ready(5.0))
        self.assertLess(time.monotonic() - started, 0.5)
        self.assertEqual(clf.ready.listener_count(), 0)

    def test_wait_until_ready_times_out_without_leaking(self) -> None:
        from clibridge.kernel.readiness import ReadinessClassifier

        clf = ReadinessClassifier("shell", debounce_ms=10)
        started = time.monotonic()
        self.assertFalse(clf.wait_until_ready(0.1))
        self.assertGreaterEqual(time.monotonic() - started, 0.09)
        self.assertEqual(clf.ready.listener_count(), 0)
        self.assertFalse(clf.is_ready())

    def test_wait_until_ready_wakes_on_transition(self) -> None:
        from clibridge.kernel.readiness import ReadinessClassifier

        clf = ReadinessClassifier("shell", debounce_ms=10)
        t = threading.Timer(0.05, lambda: clf.process("$ "))
        t.start()
        try:
            self.assertTrue(clf.wait_until_ready(2.0))
        finally:
            t.cancel()
        self.assertEqual(clf.ready.listener_count(), 0)

    def test_custom_pattern_registration(self) -> None:
        from clibridge.kernel.patterns import ReadinessCatalog
        from clibridge.kernel.readiness import ReadinessClassifier

        cat = ReadinessCatalog()
        clf = ReadinessClassifier("aider", catalog=cat, debounce_ms=10)
        clf.add_custom_pattern("aider", [r"aider>\s*$"], buffer_size=300)
        self.assertEqual(clf.buffer_info()["max_size"], 300)

        results = []
        clf.ready.subscribe(results.append)
        clf.process("aider> ")
        clf.flush()
        self.assertEqual(len(results), 1)
        self.assertEqual(results[0].confidence, 0.9)

    def test_default_catalog_is_private_to_each_classifier(self) -> None:
        from clibridge.kernel.readiness import ReadinessClassifier

        first = ReadinessClassifier("aider", debounce_ms=10)
        first.add_custom_pattern("aider", [r"aider>\s*$"], buffer_size=300)
        second = ReadinessClassifier("aider", debounce_ms=10)
        self.assertEqual(first.buffer_info()["max_size"], 300)
        self.assertEqual(second.buffer_info()["max_size"], 1000)

    def test_reset_drops_to_not_ready_silently(self) -> None:
        from clibridge.kernel.readiness import ReadinessClassifier

        clf = ReadinessClassifier("shell", debounce_ms=10)
        not_ready = []
        clf.not_ready.subscribe(not_ready.append)
        clf.process("$ ")
        clf.flush()
        clf.reset()
        self.assertFalse(clf.is_ready())
        self.assertEqual(clf.buffer(), "")
        self.assertEqual(not_ready, [])


if __name__ == "__main__":
    unittest.main()
