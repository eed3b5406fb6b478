import argparse
import sys

from image_search.core.config import AppConfig
from image_search.core.exceptions import ConfigurationError
from image_search.core.logging_config import setup_logging
from image_search.models.schemas import BuildStatus
from image_search.services.search_service import ImageSearchService

if __name__ == "__main__":
    ap = argparse.ArgumentParser(description="Rebuild the image embedding index")
    ap.add_argument("--config", default="config.yaml")
    ap.add_argument("--images_dir", help="Override paths.images_dir")
    args = ap.parse_args()

    cfg = AppConfig.load(args.config)
    if args.images_dir:
        cfg.paths.images_dir = args.images_dir
    setup_logging(cfg.log_level)

    service = ImageSearchService.from_config(cfg)
    try:
        report = service.build_index()
    except ConfigurationError as e:
        raise SystemExit(f"Configuration error: {e}")
    finally:
        service.close()

    print(f"Status: {report.status.value}")
    print(f"Indexed {report.indexed}/{report.candidates} images in {report.duration_seconds:.1f}s")
    for failure in report.failures:
        print(f"  [FAILED] {failure.path}: {failure.error_type}: {failure.message}")

    if report.status != BuildStatus.WRITTEN:
        sys.exit(1)
