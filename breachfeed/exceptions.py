"""Error taxonomy for the ingestion pipeline.

Each error is raised inside a single unit of work (a feed, an article, a
subscription) and converted into a result object at that unit's boundary.
"""


class BreachFeedError(Exception):
    """Base class for all pipeline errors."""


class FeedFetchError(BreachFeedError):
    """The feed document could not be retrieved (network, HTTP status, timeout)."""


class FeedParseError(BreachFeedError):
    """The feed document was retrieved but is not a usable syndication document."""


class ContentFetchError(BreachFeedError):
    """A retryable failure while retrieving an article page."""


class ClassifierUnavailableError(BreachFeedError):
    """An external scoring dependency failed; the article must stay unclassified."""


class TargetResolutionError(BreachFeedError):
    """A subscription target reference does not resolve to a live entity."""

    def __init__(self, target_type, target_id, reason: str = "not found"):
        self.target_type = target_type
        self.target_id = target_id
        self.reason = reason
        super().__init__(f"{target_type.value}:{target_id} {reason}")
