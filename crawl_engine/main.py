#!/usr/bin/env python3

"""
Crawl Engine - Main Entry Point
Runs the configured search terms through the browser crawl and reports counts
"""

import argparse
import logging
import sys

from dotenv import load_dotenv

from crawl_engine.collector import CrawlOrchestrator
from crawl_engine.config_loader import ConfigValidationError, load_config
from crawl_engine.run_metrics import RunMetrics
from crawl_engine.tasks import generate_tasks


def setup_logging(config) -> None:
    """Configure logging for the application"""
    log_file = config.get_log_file()
    log_file.parent.mkdir(parents=True, exist_ok=True)

    log_level = getattr(logging, str(config.get_log_level()).upper(), logging.INFO)

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(threadName)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler()
        ]
    )

    logger = logging.getLogger(__name__)
    logger.info("Logging initialized: %s", log_file)


def display_config(config) -> None:
    """Display loaded configuration"""
    print("\n" + "="*60)
    print("🕷️  CRAWL ENGINE")
    print("="*60)

    print("\n📋 SEARCH TERMS:")
    for i, keyword in enumerate(config.get_keywords(), 1):
        print(f"  {i}. {keyword}")

    print(f"\n📍 Location: {config.get_location()}")
    print(f"📄 Pages per term: {config.get_pages_per_term()}")

    print(f"\n⚙️  CRAWL SETTINGS:")
    print(f"  Workers: {config.get_concurrency()}")
    print(f"  Max retries: {config.get_max_retries()}")
    print(f"  Session pool: {config.get_max_pool_size()} sessions, "
          f"{config.get_max_usage_count()} uses / {config.get_max_error_score()} errors each")
    print(f"  Headless mode: {config.is_headless()}")
    print(f"  Proxy: {'enabled' if config.is_proxy_enabled() else 'disabled'}")

    print("\n" + "="*60 + "\n")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Browser-driven job search crawler")
    parser.add_argument(
        "--config",
        default="config/settings.yaml",
        help="Path to config YAML",
    )
    return parser.parse_args()


def main() -> int:
    """Main execution function"""
    load_dotenv(override=False)
    print("\n🚀 Starting crawl...")
    args = parse_args()

    try:
        config = load_config(args.config)
    except FileNotFoundError as e:
        print(f"❌ Error: {e}")
        print("Copy config/settings.example.yaml to config/settings.yaml first!")
        return 1
    except ConfigValidationError as e:
        print(f"❌ {e}")
        return 1
    except Exception as e:
        print(f"❌ Error loading config: {e}")
        return 1

    setup_logging(config)
    logger = logging.getLogger(__name__)
    display_config(config)

    tasks = generate_tasks(
        config.get_keywords(),
        config.get_pages_per_term(),
        location=config.get_location(),
        salary_hint=config.get_salary_hint(),
    )
    logger.info("Created %d search tasks", len(tasks))
    if not tasks:
        print("⚠️  No search tasks configured (check search.keywords and search.pages_per_term)")
        return 0

    metrics = RunMetrics(target=config.get_source_label())
    orchestrator = CrawlOrchestrator.from_config(config, metrics=metrics)
    result = orchestrator.run(tasks)

    metrics_path = metrics.write_json(
        template=config.get_metrics_template(),
        extra={"config": str(args.config)},
    )

    print("\n" + "="*60)
    print("✅ CRAWL COMPLETE")
    print("="*60)
    print(f"\n📊 Results: {len(result.records)} jobs collected")
    print(f"   Tasks processed: {result.tasks_processed}")
    print(f"   Tasks failed: {result.tasks_failed}")
    print(f"   Tasks skipped: {result.tasks_skipped}")
    print(f"📁 Metrics: {metrics_path}")
    print("\n" + "="*60 + "\n")

    logger.info("Crawl complete: %s", result.summary())
    return 0


if __name__ == "__main__":
    sys.exit(main())
