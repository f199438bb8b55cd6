"""
HTTP clients for NPR's syndication APIs

NprClient talks to the legacy NPRML API (XML). NprCdsClient talks to the
Content Distribution Service (JSON). Both wrap a requests.Session, resolve
the host from settings, and keep the last request/response for report().
"""

import logging
import time
from typing import Any, Dict, List, Optional

import requests

from .cds import denormalize
from .errors import ConfigurationError, NotFoundError, TransientNetworkError
from .nprml import NprmlParser, ParsedElement
from .settings import Settings

logger = logging.getLogger(__name__)

NPR_API_CDS_PROD_HOST = "https://content.api.npr.org"
NPR_API_CDS_STAGE_HOST = "https://stage-content.api.npr.org"
NPR_API_CDS_DEV_HOST = "https://dev-content.api.npr.org"

CDS_HOSTS = {
    "staging": NPR_API_CDS_STAGE_HOST,
    "development": NPR_API_CDS_DEV_HOST,
}

CDS_TRANSCLUDE = "images,collections,corrections,bylines,audio"

MAX_TOPIC_RESULTS = 50


def _send(
    session: requests.Session, method: str, url: str, timeout: float, **kwargs
) -> requests.Response:
    """Issue one request; connection-level failures become TransientNetworkError"""
    start = time.time()
    try:
        response = session.request(method, url, timeout=timeout, **kwargs)
    except requests.RequestException as e:
        logger.error(f"API {method} {url} failed: {e}")
        raise TransientNetworkError(f"Request to {url} failed: {e}") from e

    elapsed = (time.time() - start) * 1000
    level = logging.ERROR if response.status_code >= 400 else logging.DEBUG
    logger.log(level, f"API {method} {url} - {response.status_code} ({elapsed:.0f} ms)")
    return response


class NprClient:
    """Retrieves and parses NPRML from the legacy story API"""

    def __init__(
        self,
        settings: Settings,
        session: Optional[requests.Session] = None,
        api_key: Optional[str] = None,
    ):
        self.settings = settings
        self.session = session or requests.Session()
        self.api_key = api_key or settings.get("api", "npr_api_api_key")
        self.timeout = settings.get("api", "request_timeout", 30)

        self.params: Optional[Dict[str, Any]] = None
        self.response: Optional[requests.Response] = None
        self.xml: Optional[str] = None
        self.stories: List[ParsedElement] = []
        self.notices: List[str] = []
        self.message: Dict[str, str] = {}

    @property
    def base_url(self) -> str:
        """Production or staging host, picked by the pull settings"""
        if self.settings.get("pull", "npr_pull_url") == "staging":
            return self.settings.get("api", "npr_api_stage_url")
        return self.settings.get("api", "npr_api_production_url")

    def request(self, method: str = "GET", url: str = "", **kwargs) -> requests.Response:
        return _send(self.session, method, url, self.timeout, **kwargs)

    def get_xml_stories(self, params: Dict[str, Any]) -> str:
        """
        GET {base}/query/ and keep the raw NPRML.

        Raises:
            ConfigurationError: no API key or base URL
            NotFoundError: non-2xx response
        """
        base_url = self.base_url
        if not self.api_key or not base_url:
            raise ConfigurationError("The configured NPR API Key is not correct.")

        query = dict(params)
        query["apiKey"] = self.api_key
        query["sort"] = "dateDesc"
        self.params = query

        self.response = self.request("GET", base_url.rstrip("/") + "/query/", params=query)
        if not self.response.ok:
            logger.error(self.response.reason)
            raise NotFoundError(
                f"NPR API returned {self.response.status_code}: {self.response.reason}",
                status_code=self.response.status_code,
                story_id=params.get("id"),
            )

        self.xml = self.response.text
        return self.xml

    def parse(self) -> List[ParsedElement]:
        """Turn the last NPRML response into story elements"""
        parser = NprmlParser(field_mappings=self.settings.story_mappings())
        self.stories = parser.parse(self.xml)
        self.notices = parser.notices
        self.message = parser.message
        return self.stories

    def get_stories(self, params: Dict[str, Any]) -> List[ParsedElement]:
        """Fetch and parse stories matching the query parameters"""
        self.get_xml_stories(params)
        return self.parse()

    def get_stories_by_org_id(
        self, org_id: int, options: Optional[Dict[str, Any]] = None
    ) -> List[ParsedElement]:
        options = {"num_results": 1, "start_num": 0, "start_date": "", "end_date": "", **(options or {})}
        params = {"orgId": org_id, "fields": "all", "dateType": "story"}
        if options["start_date"]:
            params["startDate"] = options["start_date"]
        if options["end_date"]:
            params["endDate"] = options["end_date"]
        params["startNum"] = options["start_num"]
        params["numResults"] = options["num_results"]
        return self.get_stories(params)

    def get_stories_by_topic_id(
        self, topic_id: int, options: Optional[Dict[str, Any]] = None
    ) -> List[ParsedElement]:
        options = {
            "num_results": 1,
            "start_num": 0,
            "sort": "dateDesc",
            "start_date": "",
            "end_date": "",
            **(options or {}),
        }
        if int(options["num_results"]) > MAX_TOPIC_RESULTS:
            raise ValueError(
                f"Cannot process more than {MAX_TOPIC_RESULTS} stories at one time "
                "when a date range is used."
            )

        params = {
            "numResults": options["num_results"],
            "id": topic_id,
            "sort": options["sort"],
            "fields": "all",
        }
        if int(options["start_num"]) > 0:
            params["startNum"] = options["start_num"]
        if options["start_date"]:
            params["startDate"] = options["start_date"]
        if options["end_date"]:
            params["endDate"] = options["end_date"]
        return self.get_stories(params)

    def report(self) -> List[str]:
        """Short summary of the last request and its stories"""
        msg = []
        if self.params:
            params = "".join(f" [{k} => {v}]" for k, v in self.params.items())
            msg.append("Request params were:" + params)
        else:
            msg.append("Request had no parameters.")

        if self.response is not None and self.response.status_code:
            msg.append(f"Response code was {self.response.status_code}.")

        if self.stories:
            msg.append(f"Request returned {len(self.stories)} stories:")
            for story in self.stories:
                title = story.text("title")
                story_id = story.text("id")
                if title and story_id:
                    msg.append(f"{title} (ID: {story_id})")
        else:
            msg.append("The API key is probably incorrect")
        return msg


class NprCdsClient:
    """
    Retrieves and normalizes documents from the Content Distribution Service

    Documentation: https://npr.github.io/content-distribution-service/
    """

    def __init__(
        self,
        settings: Settings,
        session: Optional[requests.Session] = None,
        token: Optional[str] = None,
    ):
        self.settings = settings
        self.session = session or requests.Session()
        self.token = token or settings.get("api", "npr_api_cds_api_key") or ""
        self.timeout = settings.get("api", "request_timeout", 30)
        self.default_headers = {"Authorization": f"Bearer {self.token}"}

        self.params: Optional[Dict[str, Any]] = None
        self.response: Optional[requests.Response] = None

        self.set_url(settings.get("api", "npr_api_url"))

    def set_url(self, url: Optional[str]):
        """Select the host: "staging", "development", or production"""
        self.base_url = CDS_HOSTS.get(url or "", NPR_API_CDS_PROD_HOST)

    def resolve(self, uri: str) -> str:
        if uri.startswith("http"):
            return uri
        return self.base_url + (uri if uri.startswith("/") else "/" + uri)

    def request(self, method: str, uri: str, **kwargs) -> requests.Response:
        """
        Send an authenticated request. Error statuses are returned, not raised.
        """
        headers = dict(self.default_headers)
        headers.update(kwargs.pop("headers", None) or {})
        return _send(
            self.session, method, self.resolve(uri), self.timeout, headers=headers, **kwargs
        )

    def get_stories(self, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        """
        GET v1/documents (or v1/documents/{id}) and normalize each resource.

        A non-200 response yields an empty list.
        """
        query = dict(params)
        url = "v1/documents"
        if "id" in query:
            url += f"/{query.pop('id')}"
        query["transclude"] = CDS_TRANSCLUDE
        self.params = query

        self.response = self.request("GET", url, params=query)
        if self.response.status_code != 200:
            return []

        data = self.response.json()
        return [denormalize(resource) for resource in data.get("resources", [])]

    def report(self) -> List[str]:
        """Query the latest News stories and summarize the response"""
        params = {
            "sort": "publishDateTime:desc",
            "offset": 0,
            "limit": 10,
            "transclude": "bylines,layout,transcript,items",
            "collectionIds": "1126",
        }
        report = ["Request params were:" + "".join(f" [{k} => {v}]" for k, v in params.items())]

        response = self.request("GET", "v1/documents", params=params)
        self.params = params
        self.response = response
        report.append(f"Response code was {response.status_code}")

        if response.status_code == 200:
            resources = response.json().get("resources", [])
            report.append(f"Request returned {len(resources)} stories:")
            for resource in resources:
                report.append(f"{resource.get('title', '')} (ID: {resource.get('id', '')})")
        return report
