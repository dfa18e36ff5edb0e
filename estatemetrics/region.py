# estatemetrics/region.py
"""Per-region pipeline: scrape, merge, report, value, persist.

Region configuration lives in the `registered_indexes` collection, one
record per region keyed by the fingerprint of the region id. Each run writes
the raw feeds, the combined rentals, the rental report and the decorated
properties into `<region>_*` collections, then stamps `lastRan` on the
region record. A run that fails or is cancelled never stamps `lastRan`, so
the next scheduled tick retries it.
"""
import random
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from pydantic import ValidationError

from . import config
from .errors import InvalidDataset, OperationCancelled, RegionNotFound, UpstreamFetchFailure
from .merge import RecordMerger
from .normalize import fingerprint
from .report import MarketStatisticsEngine
from .schemas import MarketReport, RegionSources
from .sources import REDFIN, ZILLOW, ListingSource
from .store import DocumentStore, validate_index_name
from .utils import logger, parse_timestamp, timestamp, utcnow
from .valuation import ValuationDecorator

REGISTERED_INDEXES = "registered_indexes"
RENTALS = "rentals"
PROPERTIES = "properties"


class RegionState(str, Enum):
    IDLE = "idle"
    SCRAPING = "scraping"
    MERGING = "merging"
    REPORTING = "reporting"
    DECORATING = "decorating"
    PERSISTING = "persisting"
    FAILED = "failed"


def snake_case(*parts: str) -> str:
    return "_".join(p for p in parts if p)


def index_names(region_id: str, base: str = REDFIN.name, enrich: str = ZILLOW.name) -> Dict[str, str]:
    return {
        "combined_rentals": snake_case(region_id, RENTALS),
        "combined_properties": snake_case(region_id, PROPERTIES),
        "rental_report": snake_case(region_id, RENTALS, "report"),
        f"{base}_rentals": snake_case(region_id, RENTALS, base),
        f"{base}_properties": snake_case(region_id, PROPERTIES, base),
        f"{enrich}_rentals": snake_case(region_id, RENTALS, enrich),
        f"{enrich}_properties": snake_case(region_id, PROPERTIES, enrich),
    }


def region_record_id(region_id: str) -> str:
    return fingerprint(region_id)


class RegionPipeline:
    def __init__(
        self,
        store: DocumentStore,
        base: ListingSource = REDFIN,
        enrich: ListingSource = ZILLOW,
        merger: Optional[RecordMerger] = None,
        engine: Optional[MarketStatisticsEngine] = None,
        decorator: Optional[ValuationDecorator] = None,
        staleness: timedelta = timedelta(hours=config.STALENESS_HOURS),
        dev_mode: bool = config.DEV_MODE,
        delay_range: Tuple[int, int] = (config.REGION_DELAY_MIN, config.REGION_DELAY_MAX),
        rng: Optional[random.Random] = None,
        export=None,
    ):
        self.store = store
        self.base = base
        self.enrich = enrich
        self.merger = merger or RecordMerger(base_prefix=base.name)
        self.engine = engine or MarketStatisticsEngine()
        self.decorator = decorator or ValuationDecorator()
        self.staleness = staleness
        self.dev_mode = dev_mode
        self.delay_range = delay_range
        self.rng = rng or random.Random()
        self.export = export
        self.states: Dict[str, RegionState] = {}

    @property
    def sources(self) -> Tuple[ListingSource, ListingSource]:
        return self.base, self.enrich

    # -- registration --------------------------------------------------------

    def registered_regions(self) -> List[Dict[str, Any]]:
        if not self.store.exists(REGISTERED_INDEXES):
            return []
        records = self.store.get(REGISTERED_INDEXES, size=None, sort=["region"])["records"]
        return [r for r in records if r.get("region")]

    def region_config(self, region_id: str) -> Dict[str, Any]:
        record = None
        if self.store.exists(REGISTERED_INDEXES):
            record = self.store.find_one(REGISTERED_INDEXES, {"id": region_record_id(region_id)})
        if record is None:
            raise RegionNotFound(region_id)
        return record

    def update_regions_index(self, region_id: str, options: Mapping[str, Any]) -> Dict[str, Any]:
        """Register a region (or replace its request templates), keeping its `lastRan`."""
        validate_index_name(region_id)
        record: Dict[str, Any] = {
            "id": region_record_id(region_id),
            "region": region_id,
            "relatedIndexes": list(index_names(region_id, self.base.name, self.enrich.name).values()),
        }
        for source in self.sources:
            raw = options.get(source.name)
            if raw is None:
                raise InvalidDataset(f"missing {source.name} configuration for region {region_id!r}")
            if "rentals" not in raw:
                raw = {"rentals": raw}
            try:
                sources = RegionSources.model_validate(raw)
            except ValidationError as e:
                raise InvalidDataset(f"invalid {source.name} configuration for region {region_id!r}: {e}") from e
            rentals = sources.rentals.model_dump(exclude_none=True)
            properties = (
                sources.properties.model_dump(exclude_none=True)
                if sources.properties is not None
                else source.property_config(rentals)
            )
            record[source.name] = {RENTALS: rentals, PROPERTIES: properties}

        try:
            previous = self.region_config(region_id)
        except RegionNotFound:
            previous = {}
        record["lastRan"] = previous.get("lastRan")
        record["registeredAt"] = previous.get("registeredAt") or timestamp()

        self.store.upsert(REGISTERED_INDEXES, {
            "records": [record],
            "meta": {"lastUpdated": timestamp()},
        }).raise_for_errors()
        logger.info("Region %s registered", region_id)
        return record

    # -- staleness -----------------------------------------------------------

    def should_run(self, region_id: str, now=None) -> bool:
        """True when the region last ran more than `staleness` ago (always true in dev mode)."""
        if self.dev_mode:
            return True
        try:
            last_ran = parse_timestamp(self.region_config(region_id).get("lastRan"))
        except RegionNotFound:
            return True
        if last_ran is None:
            return True
        return (now or utcnow()) - last_ran > self.staleness

    # -- pipeline ------------------------------------------------------------

    def _transition(self, region_id: str, state: RegionState) -> None:
        self.states[region_id] = state
        logger.debug("Region %s: %s", region_id, state.value)

    def scrape(self, region_id: str, options: Mapping[str, Any]) -> Dict[str, List[Dict[str, Any]]]:
        """Fetch rentals and properties from both sources concurrently."""
        jobs = {}
        with ThreadPoolExecutor(max_workers=4, thread_name_prefix=f"scrape-{region_id}") as pool:
            for source in self.sources:
                source_options = options.get(source.name) or {}
                for kind, fetch in ((RENTALS, source.fetch_rentals), (PROPERTIES, source.fetch_properties)):
                    jobs[(source.name, kind)] = pool.submit(fetch, source_options.get(kind) or {})
            results = {}
            for (name, kind), job in jobs.items():
                try:
                    listings = job.result()
                except Exception as e:
                    raise UpstreamFetchFailure(region_id, name, kind, str(e)) from e
                if not isinstance(listings, list):
                    raise UpstreamFetchFailure(region_id, name, kind, f"expected a list, got {type(listings).__name__}")
                results[f"{name}_{kind}"] = listings
                logger.info("Region %s: %s returned %d %s", region_id, name, len(listings), kind)
        return results

    def process(self, region_id: str, scraped: Mapping[str, List[Dict[str, Any]]], names: Mapping[str, str]):
        base, enrich = self.base.name, self.enrich.name
        self._transition(region_id, RegionState.MERGING)
        combined_rentals = self.merger.merge(scraped[f"{base}_{RENTALS}"], scraped[f"{enrich}_{RENTALS}"])
        combined_properties = self.merger.merge(scraped[f"{base}_{PROPERTIES}"], scraped[f"{enrich}_{PROPERTIES}"])

        self._transition(region_id, RegionState.REPORTING)
        report = self.engine.analyze(combined_rentals, index=names["rental_report"])

        self._transition(region_id, RegionState.DECORATING)
        decorated = self.decorator.decorate(combined_properties, report)
        return combined_rentals, report, decorated

    def persist_plan(
        self,
        region_id: str,
        options: Mapping[str, Any],
        scraped: Mapping[str, List[Dict[str, Any]]],
        combined_rentals: List[Dict[str, Any]],
        report: MarketReport,
        decorated: List[Dict[str, Any]],
        names: Mapping[str, str],
    ) -> List[Tuple[str, Dict[str, Any]]]:
        """Ordered upserts: raw feeds first, then everything derived from them."""
        ran = timestamp()
        base_meta = {
            "lastRan": ran,
            "region": region_id,
            "relatedIndexes": list(names.values()),
        }
        plan = []
        for source in self.sources:
            for kind in (RENTALS, PROPERTIES):
                key = f"{source.name}_{kind}"
                source_meta = dict((options.get(source.name) or {}).get(kind) or {})
                plan.append((names[key], {
                    "records": scraped[key],
                    "meta": {**source_meta, "lastRan": ran, "region": region_id, "source": source.name},
                }))
        plan.append((names["combined_rentals"], {"records": combined_rentals, "meta": base_meta}))
        plan.append((names["rental_report"], {"records": report.records(), "meta": base_meta}))
        plan.append((names["combined_properties"], {
            "records": decorated,
            "meta": {**base_meta, "rentalReport": report.document()},
        }))
        return plan

    def fetch_region(self, region_id: str, cancel: Optional[threading.Event] = None, force: bool = False):
        """Run the full pipeline for one region; returns the decorated properties or None if skipped."""
        if not force and not self.should_run(region_id):
            logger.info("Skipping fetching region %s as it was updated less than %s ago", region_id, self.staleness)
            return None

        options = self.region_config(region_id)
        names = index_names(region_id, self.base.name, self.enrich.name)
        try:
            with self.store.connection.cancel_scope(cancel):
                self._transition(region_id, RegionState.SCRAPING)
                scraped = self.scrape(region_id, options)
                self._check(cancel, region_id)
                combined_rentals, report, decorated = self.process(region_id, scraped, names)

                self._transition(region_id, RegionState.PERSISTING)
                for index, dataset in self.persist_plan(
                    region_id, options, scraped, combined_rentals, report, decorated, names
                ):
                    self._check(cancel, region_id)
                    result = self.store.upsert(index, dataset)
                    if not result.ok:
                        logger.error("Region %s: %d batches failed writing %s", region_id, len(result.errors), index)

                self._check(cancel, region_id)
                self._mark_ran(options)
        except BaseException:
            self._transition(region_id, RegionState.FAILED)
            raise
        self._transition(region_id, RegionState.IDLE)
        logger.info("Region %s: %d decorated properties", region_id, len(decorated))
        return decorated

    def _mark_ran(self, record: Mapping[str, Any]) -> None:
        updated = {**record, "lastRan": timestamp()}
        self.store.upsert(REGISTERED_INDEXES, {
            "records": [updated],
            "meta": {"lastRan": updated["lastRan"]},
        }).raise_for_errors()

    @staticmethod
    def _check(cancel: Optional[threading.Event], region_id: str) -> None:
        if cancel is not None and cancel.is_set():
            raise OperationCancelled(f"region {region_id} cancelled")

    # -- batch job -----------------------------------------------------------

    def run_job(self, cancel: Optional[threading.Event] = None) -> Dict[str, str]:
        """Sync every registered region in turn, pausing a random delay between them."""
        cancel = cancel or threading.Event()
        regions = [r["region"] for r in self.registered_regions()]
        logger.info("Starting job execution. Regions %s will be synced.", ", ".join(regions) or "(none)")
        outcomes: Dict[str, str] = {}

        for position, region in enumerate(regions):
            try:
                results = self.fetch_region(region, cancel=cancel)
                if results is None:
                    outcomes[region] = "skipped"
                else:
                    outcomes[region] = "ok"
                    logger.info('Region "%s" successfully synced. %d records processed.', region, len(results))
            except OperationCancelled:
                outcomes[region] = "cancelled"
                logger.warning('Region "%s" cancelled; stopping the job', region)
                break
            except Exception:
                outcomes[region] = "failed"
                logger.exception('Error syncing region "%s"', region)

            if position < len(regions) - 1:
                delay = self.rng.randint(*self.delay_range)
                logger.info("Waiting %d seconds before syncing the next region.", delay)
                if cancel.wait(delay):
                    logger.warning("Job cancelled during the inter-region delay")
                    break

        for region in regions:
            outcomes.setdefault(region, "cancelled")
        if self.export is not None and any(v == "ok" for v in outcomes.values()):
            self.export.sync()
        return outcomes
