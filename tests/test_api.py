import base64
import tempfile
import unittest
from pathlib import Path

from fastapi.testclient import TestClient

from image_search.api.endpoints import create_app, mime_type_for
from image_search.services.search_service import ImageSearchService

from fakes import ProjectionEngine, image_bytes, make_config, write_oversized_png, write_solid_image


class TestSearchAPI(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.config = make_config(Path(self.tmp.name))
        self.images = self.config.paths.images_path
        write_solid_image(self.images / "red.png", (230, 20, 20))
        write_solid_image(self.images / "blue.jpg", (20, 20, 230), fmt="JPEG")

        self.service = ImageSearchService.from_config(self.config, engine=ProjectionEngine())
        self.client = TestClient(create_app(self.config, self.service))

    def tearDown(self):
        self.client.close()
        self.tmp.cleanup()

    def post_image(self, data, **form):
        return self.client.post(
            "/search",
            files={"image": ("query.png", data, "image/png")},
            data={k: str(v) for k, v in form.items()},
        )

    def test_search_returns_matched_images(self):
        response = self.post_image(image_bytes((230, 20, 20)))

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body[0]["name"], "red.png")
        self.assertEqual(body[0]["type"], "image/png")
        self.assertEqual(base64.b64decode(body[0]["image"]), (self.images / "red.png").read_bytes())
        self.assertGreaterEqual(body[0]["similarity"], 0.8)

    def test_missing_file_is_bad_request(self):
        response = self.client.post("/search", data={"top_k": "3"})

        self.assertEqual(response.status_code, 400)

    def test_empty_file_is_bad_request(self):
        response = self.post_image(b"")

        self.assertEqual(response.status_code, 400)

    def test_corrupt_image_is_unprocessable(self):
        self.client.post("/index/rebuild")

        response = self.post_image(b"garbage bytes")

        self.assertEqual(response.status_code, 422)

    def test_no_match_is_not_found(self):
        response = self.post_image(image_bytes((20, 230, 20)), threshold=1.0)

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["status"], "no_match")

    def test_out_of_range_form_fields_are_rejected(self):
        for form in [{"top_k": 0}, {"top_k": -2}, {"threshold": 1.5}, {"threshold": -2}]:
            response = self.post_image(image_bytes((230, 20, 20)), **form)

            self.assertEqual(response.status_code, 422, msg=str(form))

    def test_oversized_image_is_unprocessable(self):
        self.client.post("/index/rebuild")

        with tempfile.TemporaryDirectory() as tmp:
            data = write_oversized_png(Path(tmp) / "huge.png").read_bytes()
        response = self.post_image(data)

        self.assertEqual(response.status_code, 422)

    def test_no_index_is_not_found(self):
        for path in list(self.images.iterdir()):
            if path.is_file():
                path.unlink()

        response = self.post_image(image_bytes((230, 20, 20)))

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["status"], "no_index")

    def test_rebuild_and_stats(self):
        response = self.client.post("/index/rebuild")

        self.assertEqual(response.status_code, 200)
        report = response.json()
        self.assertEqual(report["status"], "written")
        self.assertEqual(report["indexed"], 2)

        stats = self.client.get("/index").json()
        self.assertTrue(stats["exists"])
        self.assertEqual(stats["total_images"], 2)

    def test_health(self):
        response = self.client.get("/health")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "healthy")
        self.assertFalse(response.json()["index_exists"])

    def test_mime_types(self):
        self.assertEqual(mime_type_for("a/b/photo.JPEG"), "image/jpeg")
        self.assertEqual(mime_type_for("x.webp"), "image/webp")
        self.assertEqual(mime_type_for("x.raw"), "application/octet-stream")


if __name__ == "__main__":
    unittest.main()
