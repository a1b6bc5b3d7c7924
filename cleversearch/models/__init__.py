from cleversearch.models.site import Site, Page  # noqa: F401
from cleversearch.models.content import ContentDeployment  # noqa: F401
from cleversearch.models.tracking import TrackerRecord, PageAnalytics  # noqa: F401
