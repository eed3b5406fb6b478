import argparse
import json

from image_search.core.config import AppConfig
from image_search.core.exceptions import ImageSearchError
from image_search.core.logging_config import setup_logging
from image_search.services.search_service import ImageSearchService

if __name__ == "__main__":
    ap = argparse.ArgumentParser(description="Find indexed images similar to a query image")
    ap.add_argument("--img", required=True)
    ap.add_argument("--config", default="config.yaml")
    ap.add_argument("-k", "--top_k", type=int)
    ap.add_argument("-t", "--threshold", type=float)
    ap.add_argument("-o", "--output", help="Write results as JSON")
    args = ap.parse_args()

    cfg = AppConfig.load(args.config)
    setup_logging(cfg.log_level)

    service = ImageSearchService.from_config(cfg)
    try:
        outcome = service.search(args.img, threshold=args.threshold, top_k=args.top_k)
    except (ImageSearchError, ValueError) as e:
        raise SystemExit(f"Search failed: {type(e).__name__}: {e}")
    finally:
        service.close()

    if not outcome.found:
        print(f"No match ({outcome.status.value})")
    for i, match in enumerate(outcome.matches, 1):
        print(f"{i}. {match.path} (similarity: {match.similarity:.4f})")

    if args.output:
        with open(args.output, 'w', encoding='utf-8') as f:
            json.dump(outcome.model_dump(mode='json'), f, indent=2, ensure_ascii=False)
        print(f"Results saved to: {args.output}")
