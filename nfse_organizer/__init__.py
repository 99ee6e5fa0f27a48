from .artifact import Artifact, Competencia, XmlMetadataReader
from .cache import CachePolicy, NamespacedCache
from .config import Config
from .fetcher import Page, PortalNacionalFetcher
from .jobs import JobRegistry
from .organizer import OrganizationReport, XmlOrganizer
from .placer import ArtifactPlacer, LocalStorage, Outcome, PlacementResult, StoredFile, placement_path
from .resolver import DuplicateResolver, Verdict
from .tracker import DownloadJobTracker, JobRunner, JobState

__all__ = [
    "Artifact",
    "ArtifactPlacer",
    "CachePolicy",
    "Competencia",
    "Config",
    "DownloadJobTracker",
    "DuplicateResolver",
    "JobRegistry",
    "JobRunner",
    "JobState",
    "LocalStorage",
    "NamespacedCache",
    "OrganizationReport",
    "Outcome",
    "Page",
    "PlacementResult",
    "PortalNacionalFetcher",
    "StoredFile",
    "Verdict",
    "XmlMetadataReader",
    "XmlOrganizer",
    "placement_path",
]
