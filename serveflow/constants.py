"""
Protocol constants shared by the engine, the publisher and the receiver.

Header names are written in their canonical casing. Lookups on inbound
requests go through ``httpx.Headers`` which is case-insensitive.
"""

WORKFLOW_ID_HEADER = "Upstash-Workflow-RunId"
WORKFLOW_INIT_HEADER = "Upstash-Workflow-Init"
WORKFLOW_URL_HEADER = "Upstash-Workflow-Url"
WORKFLOW_FAILURE_HEADER = "Upstash-Workflow-Is-Failure"
WORKFLOW_CALLBACK_HEADER = "Upstash-Workflow-Callback"
WORKFLOW_PROTOCOL_VERSION = "1"
WORKFLOW_PROTOCOL_VERSION_HEADER = "Upstash-Workflow-Sdk-Version"

SIGNATURE_HEADER = "Upstash-Signature"
REGION_HEADER = "Upstash-Region"
SIGNATURE_ISSUER = "Upstash"

DEFAULT_CONTENT_TYPE = "application/json"
DEFAULT_QSTASH_URL = "https://qstash.upstash.io"

NO_CONCURRENCY = 1

# Regions with dedicated queue endpoints and signing keys
SUPPORTED_REGIONS = ("EU_CENTRAL_1", "US_EAST_1")

# Inbound headers that are never forwarded to later invocations
INTERNAL_HEADER_PREFIXES = ("upstash-", "x-vercel-", "x-forwarded-")
INTERNAL_HEADERS = (
    "cf-connecting-ip",
    "cdn-loop",
    "cf-ew-via",
    "cf-ray",
    "render-proxy-ttl",
    "host",
    "content-length",
    "content-type",
    "connection",
    "transfer-encoding",
    "accept-encoding",
)
