"""Run the region sync once from the command line.

    python run_and_save.py              # every registered region, honouring staleness
    python run_and_save.py austin       # one region
    python run_and_save.py austin --force
"""
import argparse
import sys

from estatemetrics.errors import EstateMetricsError
from estatemetrics.main import build_pipeline
from estatemetrics.utils import logger


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Scrape, report and value registered regions.")
    parser.add_argument("region", nargs="?", help="region id; all registered regions when omitted")
    parser.add_argument("--force", action="store_true", help="ignore the staleness window")
    parser.add_argument("--no-export", action="store_true", help="skip the flat table export")
    args = parser.parse_args(argv)

    pipeline = build_pipeline()
    if args.no_export:
        pipeline.export = None
    try:
        if args.region:
            results = pipeline.fetch_region(args.region, force=args.force)
            if results is None:
                print(f"{args.region}: skipped (ran within the last {pipeline.staleness})")
            else:
                print(f"{args.region}: saved {len(results)} decorated properties")
                if pipeline.export is not None:
                    pipeline.export.sync()
            return 0

        outcomes = pipeline.run_job()
        for region, outcome in outcomes.items():
            print(f"{region}: {outcome}")
        return 1 if "failed" in outcomes.values() else 0
    except EstateMetricsError as e:
        logger.error("Run failed: %s", e)
        return 1
    finally:
        pipeline.store.connection.close(stop_process=False)


if __name__ == "__main__":
    sys.exit(main())
