"""
NPR API Library

A Python library for pulling stories from NPR's syndication APIs into a local
content store, and pushing local stories back.

Usage:
    import npr_api

    settings = npr_api.Settings("~/.npr_story/settings.json")
    store = npr_api.ContentStore()
    client = npr_api.create_pull_client(settings, store)
    client.add_or_update_node(client.get_stories({"id": "1234567"})[0])

    # Or import specific modules
    from npr_api.transport import NprCdsClient
    from npr_api.nprml import parse_nprml
    from npr_api.cds import denormalize

Modules:
    transport: HTTP clients for the legacy NPRML API and the CDS
    nprml: Legacy NPRML parser
    cds: CDS document normalizer
    mapper: Story field mapping into local records
    media: Image, audio, multimedia, external asset and HTML block import
    pull: Pull clients and queue updates
    push: Push clients
    story_queue: Persistent story queue and worker
    store: SQLite content store
    settings: Grouped settings and field mapping tables
    filters: Text filters (auto-paragraphs, summaries, truncation)
    utils: Import reports and user-facing messages
"""

from .errors import (
    NprError,
    ConfigurationError,
    NotFoundError,
    DuplicateEntityError,
    TransientNetworkError,
)

from .settings import Settings, UNUSED, is_used

from .store import ContentRecord, ContentStore

from .transport import NprClient, NprCdsClient

from .nprml import NprmlParser, ParsedElement, parse_nprml

from .cds import denormalize

from .mapper import (
    StoryMapper,
    NprmlStoryMapper,
    StoryField,
    ImportResult,
    ImportStatus,
)

from .pull import CdsPullClient, NprmlPullClient, create_pull_client, extract_id

from .push import CdsPushClient, NprmlPushClient, create_push_client

from .story_queue import StoryQueue, StoryQueueWorker

from .utils import (
    report,
    report_out,
    reports,
    clear_reports,
    get_report_summary,
    load_reports,
    save_reports,
    delete_reports,
    Messenger,
)

# Version information
__version__ = "1.0.0"
