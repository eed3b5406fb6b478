import tempfile
import threading
import unittest
from pathlib import Path

import numpy as np

from image_search.core.embedding import EmbeddingExtractor
from image_search.core.exceptions import ConfigurationError
from image_search.core.preprocessing import ImagePreprocessor
from image_search.models.schemas import BuildStatus
from image_search.services.index_builder import IndexBuilder
from image_search.services.index_store import IndexStore

from fakes import (
    FailingEngine, ProjectionEngine, make_config, write_noise_image, write_oversized_png,
    write_solid_image
)


class CancelAfter:
    """Engine wrapper that sets a cancel event after n calls"""

    def __init__(self, engine, n, event):
        self.engine = engine
        self.n = n
        self.event = event
        self.calls = 0

    def run(self, tensor, input_name):
        self.calls += 1
        if self.calls >= self.n:
            self.event.set()
        return self.engine.run(tensor, input_name)


class TestIndexBuilder(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name)
        self.config = make_config(self.root)
        self.images = self.config.paths.images_path
        self.images.mkdir(parents=True)

    def tearDown(self):
        self.tmp.cleanup()

    def builder(self, engine=None):
        engine = engine or ProjectionEngine()
        store = IndexStore(self.config.paths.index_file_path)
        return IndexBuilder(
            self.config,
            ImagePreprocessor(self.config.preprocessing),
            EmbeddingExtractor(engine, self.config.model),
            store,
        )

    def test_partial_failure_keeps_valid_images(self):
        write_solid_image(self.images / "red.png", (255, 0, 0))
        write_solid_image(self.images / "green.png", (0, 255, 0))
        write_noise_image(self.images / "noise.png", seed=1)
        (self.images / "broken.jpg").write_bytes(b"this is not really a jpeg")

        builder = self.builder()
        with self.assertLogs("image_search.services.index_builder", level="WARNING") as logs:
            report = builder.build()

        self.assertEqual(report.status, BuildStatus.WRITTEN)
        self.assertEqual(report.candidates, 4)
        self.assertEqual(report.indexed, 3)
        self.assertEqual([f.path for f in report.failures], [str(self.images / "broken.jpg")])
        self.assertEqual(report.failures[0].error_type, "DecodeError")
        self.assertTrue(any("broken.jpg" in line for line in logs.output))

        snapshot = builder.store.load()
        self.assertEqual(len(snapshot), 3)
        self.assertNotIn(str(self.images / "broken.jpg"), snapshot)
        for vector in snapshot.matrix:
            self.assertAlmostEqual(float(np.linalg.norm(vector)), 1.0, places=5)

    def test_oversized_image_does_not_abort_build(self):
        write_solid_image(self.images / "a.png", (200, 10, 10))
        write_oversized_png(self.images / "b_huge.png")
        write_solid_image(self.images / "c.png", (10, 10, 200))

        builder = self.builder()
        with self.assertLogs("image_search.services.index_builder", level="WARNING"):
            report = builder.build()

        self.assertEqual(report.status, BuildStatus.WRITTEN)
        self.assertEqual(report.indexed, 2)
        self.assertEqual([f.path for f in report.failures], [str(self.images / "b_huge.png")])
        self.assertEqual(report.failures[0].error_type, "DecodeError")
        self.assertEqual(
            list(builder.store.load().paths),
            [str(self.images / "a.png"), str(self.images / "c.png")]
        )

    def test_exclusion_zones(self):
        write_solid_image(self.images / "keep.png", (10, 20, 30))
        write_solid_image(self.config.paths.model_path / "asset.png", (1, 2, 3))
        write_solid_image(self.images / "query" / "probe.png", (4, 5, 6))
        (self.images / "notes.txt").write_text("not an image")
        (self.images / "nested").mkdir()
        write_solid_image(self.images / "nested" / "deep.png", (7, 8, 9))

        builder = self.builder()
        report = builder.build()

        snapshot = builder.store.load()
        self.assertEqual(report.indexed, 1)
        self.assertEqual(snapshot.paths, (str(self.images / "keep.png"),))

    def test_model_dir_files_excluded_when_model_dir_is_images_dir(self):
        self.config.paths.model_dir = str(self.images)
        write_solid_image(self.images / "a.png", (1, 1, 1))

        self.assertEqual(self.builder().find_candidates(), [])

    def test_case_insensitive_deterministic_order(self):
        for name in ["b.PNG", "A.png", "c.Jpg", "a2.jpeg"]:
            fmt = "JPEG" if name.lower().endswith(("jpg", "jpeg")) else "PNG"
            write_solid_image(self.images / name, (50, 60, 70), fmt=fmt)

        candidates = [p.name for p in self.builder().find_candidates()]

        self.assertEqual(candidates, ["A.png", "a2.jpeg", "b.PNG", "c.Jpg"])

    def test_no_candidates_writes_nothing(self):
        (self.images / "readme.txt").write_text("nothing to index")
        builder = self.builder()

        with self.assertLogs("image_search.services.index_builder", level="WARNING"):
            report = builder.build()

        self.assertEqual(report.status, BuildStatus.NO_CANDIDATES)
        self.assertFalse(builder.store.exists())

    def test_missing_source_writes_nothing(self):
        builder = self.builder()

        report = builder.build(source_dir=self.root / "does-not-exist")

        self.assertEqual(report.status, BuildStatus.SOURCE_MISSING)
        self.assertFalse(builder.store.exists())

    def test_all_items_failing_still_writes_empty_index(self):
        (self.images / "bad1.png").write_bytes(b"nope")
        (self.images / "bad2.png").write_bytes(b"nope either")
        builder = self.builder()

        report = builder.build()

        self.assertEqual(report.status, BuildStatus.WRITTEN)
        self.assertEqual(report.indexed, 0)
        self.assertEqual(len(builder.store.load()), 0)

    def test_rebuild_replaces_previous_index(self):
        write_solid_image(self.images / "one.png", (255, 0, 0))
        write_solid_image(self.images / "two.png", (0, 0, 255))
        builder = self.builder()
        builder.build()

        (self.images / "two.png").unlink()
        report = builder.build()

        snapshot = builder.store.load()
        self.assertEqual(report.generation, 2)
        self.assertEqual(snapshot.paths, (str(self.images / "one.png"),))

    def test_cancellation_keeps_previous_index(self):
        for i in range(4):
            write_noise_image(self.images / f"img{i}.png", seed=i)
        builder = self.builder()
        builder.build()

        cancel = threading.Event()
        engine = CancelAfter(ProjectionEngine(), 2, cancel)
        report = self.builder(engine).build(cancel_event=cancel)

        self.assertEqual(report.status, BuildStatus.CANCELLED)
        self.assertEqual(engine.calls, 2)
        snapshot = builder.store.load()
        self.assertEqual(snapshot.generation, 1)
        self.assertEqual(len(snapshot), 4)

    def test_progress_reporting(self):
        for i in range(5):
            write_noise_image(self.images / f"p{i}.png", seed=10 + i)

        with self.assertLogs("image_search.services.index_builder", level="INFO") as logs:
            self.builder().build()

        progress = [line for line in logs.output if "Encoded" in line]
        self.assertEqual(len(progress), 2)  # progress_every=2 -> after 2 and 4
        self.assertTrue(any("Indexed items: 5" in line for line in logs.output))

    def test_configuration_error_aborts_build(self):
        write_solid_image(self.images / "x.png", (1, 2, 3))
        builder = self.builder(FailingEngine(ConfigurationError("model missing")))

        with self.assertRaises(ConfigurationError):
            builder.build()
        self.assertFalse(builder.store.exists())

    def test_inference_errors_are_per_item(self):
        write_solid_image(self.images / "x.png", (1, 2, 3))
        builder = self.builder(FailingEngine(RuntimeError("boom")))

        report = builder.build()

        self.assertEqual(report.indexed, 0)
        self.assertEqual(report.failures[0].error_type, "InferenceError")


if __name__ == "__main__":
    unittest.main()
