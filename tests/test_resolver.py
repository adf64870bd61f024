import threading
import unittest

from storysnap import resolver
from storysnap.errors import IntegrityError, NetworkError
from storysnap.models import Asset, PruningMode, SnapshotDescriptor
from storysnap.providers.base import SnapshotProvider


class _StubProvider(SnapshotProvider):
    def __init__(self, name, *, fail=False, wait_for=None, done=None):
        super().__init__(http=None, timeout=(1, 1))
        self.name = name
        self.fail = fail
        self.wait_for = wait_for
        self.done = done
        self.calls = []

    def fetch(self, mode):
        self.calls.append(mode)
        if self.wait_for is not None:
            self.wait_for.wait(timeout=5)
        try:
            if self.fail:
                raise NetworkError(f"{self.name} is down")
            return SnapshotDescriptor(
                provider=self.name,
                mode=mode,
                assets=[Asset("consensus", "https://x/a"), Asset("execution", "https://x/b")],
                block_height="1",
                total_size="1.00G",
                age="just now",
            )
        finally:
            if self.done is not None:
                self.done.set()

    def install(self, descriptor, layout, on_downloaded=None):
        raise AssertionError("not used")

    def export(self, descriptor, output_dir):
        raise AssertionError("not used")


class ResolveTests(unittest.TestCase):
    def test_results_follow_registration_order_even_when_completion_differs(self):
        second_done = threading.Event()
        first = _StubProvider("First", wait_for=second_done)
        second = _StubProvider("Second", done=second_done)

        results = resolver.resolve_for_mode([first, second], PruningMode.PRUNED)

        self.assertEqual([d.provider for d in results], ["First", "Second"])

    def test_failing_provider_does_not_abort_siblings(self):
        providers = [_StubProvider("A"), _StubProvider("B", fail=True), _StubProvider("C")]
        with self.assertLogs("storysnap.providers.base", level="WARNING"):
            results = resolver.resolve_for_mode(providers, "archive")

        self.assertEqual([d.provider for d in results], ["A", "B", "C"])
        self.assertEqual([d.available for d in results], [True, False, True])
        self.assertEqual([d.provider for d in resolver.candidates(results)], ["A", "C"])

    def test_every_call_requeries(self):
        provider = _StubProvider("A")
        resolver.resolve_for_mode([provider], PruningMode.PRUNED)
        resolver.resolve_for_mode([provider], PruningMode.PRUNED)
        self.assertEqual(len(provider.calls), 2)

    def test_multiple_modes_are_grouped_by_mode(self):
        providers = [_StubProvider("A"), _StubProvider("B")]
        results = resolver.resolve_for_modes(providers, [PruningMode.PRUNED, PruningMode.ARCHIVE])
        self.assertEqual(
            [(d.mode, d.provider) for d in results],
            [
                (PruningMode.PRUNED, "A"),
                (PruningMode.PRUNED, "B"),
                (PruningMode.ARCHIVE, "A"),
                (PruningMode.ARCHIVE, "B"),
            ],
        )

    def test_rejects_unknown_mode(self):
        with self.assertRaises(ValueError):
            resolver.resolve_for_mode([_StubProvider("A")], "full")


class CandidateSelectionTests(unittest.TestCase):
    def test_empty_candidate_set_is_integrity_error(self):
        results = [SnapshotDescriptor.unknown("A", PruningMode.PRUNED)]
        with self.assertRaises(IntegrityError):
            resolver.require_candidates(results, PruningMode.PRUNED)
        with self.assertRaises(IntegrityError):
            resolver.require_candidates([], PruningMode.PRUNED)

    def test_choose_rejects_placeholder(self):
        results = [SnapshotDescriptor.unknown("A", PruningMode.PRUNED)]
        with self.assertRaises(IntegrityError):
            resolver.choose(results, lambda listed: listed[0])

    def test_choose_returns_pick(self):
        good = SnapshotDescriptor(provider="B", mode=PruningMode.PRUNED)
        results = [SnapshotDescriptor.unknown("A", PruningMode.PRUNED), good]
        self.assertIs(resolver.choose(results, lambda listed: listed[1]), good)


if __name__ == "__main__":
    unittest.main()
