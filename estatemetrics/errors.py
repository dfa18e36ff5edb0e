# estatemetrics/errors.py
"""Exception taxonomy shared by storage, pipeline and API layers."""


class EstateMetricsError(Exception):
    """Base class for every error raised by this package."""


class ConnectionUnavailable(EstateMetricsError):
    """The backing store could not be reached or started."""


class OperationCancelled(EstateMetricsError):
    """A readiness poll or scheduled delay observed its cancel signal."""


class ProcessStartError(EstateMetricsError):
    """A single start command for the managed store process failed."""


class IndexNotFound(EstateMetricsError, KeyError):
    def __init__(self, name: str):
        super().__init__(name)
        self.name = name

    def __str__(self):
        return f"index {self.name!r} does not exist"


class RegionNotFound(EstateMetricsError, KeyError):
    def __init__(self, region_id: str):
        super().__init__(region_id)
        self.region_id = region_id

    def __str__(self):
        return f"region {self.region_id!r} is not registered"


class InvalidDataset(EstateMetricsError, ValueError):
    """Malformed input rejected before anything is written."""


class PartialBatchFailure(EstateMetricsError):
    def __init__(self, result):
        self.result = result
        failed = sum(len(e.ids) for e in result.errors)
        super().__init__(
            f"{len(result.errors)} of {result.batches} batches failed for "
            f"{result.index!r} ({failed} documents)"
        )


class UpstreamFetchFailure(EstateMetricsError):
    def __init__(self, region: str, source: str, kind: str, reason: str = ""):
        self.region = region
        self.source = source
        self.kind = kind
        message = f"{source} {kind} fetch failed for region {region!r}"
        super().__init__(f"{message}: {reason}" if reason else message)


class UpstreamResponseError(EstateMetricsError):
    def __init__(self, url: str, status: int):
        self.url = url
        self.status = status
        super().__init__(f"{url} returned HTTP {status}")
