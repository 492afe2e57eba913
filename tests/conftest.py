"""
Pytest configuration and shared fixtures for Bulk Data Tester tests.

Provides server configurations, a signing key and an in-process fake
bulk-data export server built on aiohttp.
"""

import base64
import itertools
import re
from collections import Counter
from typing import Any, Dict, List, Optional, Set

import jwt
import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer
from cryptography.hazmat.primitives.asymmetric import ec
from jwt.algorithms import ECAlgorithm

from bdt.client.bulk_data_client import JWT_BEARER_ASSERTION
from bdt.client.settings import NormalizedConfig
from bdt.tree.api import TestAPI
from bdt.tree.nodes import Test


CLIENT_ID = "bdt-client"

SUPPORTED_OUTPUT_FORMATS = {"application/fhir+ndjson", "application/ndjson", "ndjson"}

KNOWN_RESOURCES = {"Patient", "Observation", "Group", "Encounter", "Condition", "DocumentReference"}

V1_SCOPE = re.compile(r"^system/(\*|[A-Z][A-Za-z0-9]+)\.(read|write|\*)$")
V2_SCOPE = re.compile(r"^system/(\*|[A-Z][A-Za-z0-9]+)\.(c?r?u?d?s?)(\?.*)?$")

NDJSON_BODY = (
    '{"resourceType":"Patient","id":"1"}\n'
    '{"resourceType":"Patient","id":"2"}\n'
)


def operation_outcome(message: str) -> Dict[str, Any]:
    return {
        "resourceType": "OperationOutcome",
        "issue": [{"severity": "error", "code": "processing", "diagnostics": message}],
    }


def fhir_error(message: str, status: int) -> web.Response:
    return web.json_response(
        operation_outcome(message), status=status, content_type="application/fhir+json"
    )


def oauth_error(error: str, description: str, status: int = 400) -> web.Response:
    return web.json_response({"error": error, "error_description": description}, status=status)


def grant_scopes(requested: str) -> Optional[List[str]]:
    """
    Return the scopes granted for a space-separated request.

    Returns None when any scope is malformed or names an unknown resource.
    Write access is never granted: ``.*`` becomes ``.read`` and V2 actions
    are reduced to ``r`` and ``s``.
    """
    granted = []
    for scope in requested.split():
        v1 = V1_SCOPE.match(scope)
        v2 = V2_SCOPE.match(scope)
        match = v1 or v2
        if not match or not match.group(2):
            return None
        resource = match.group(1)
        if resource != "*" and resource not in KNOWN_RESOURCES:
            return None

        if v1:
            if match.group(2) != "write":
                granted.append(f"system/{resource}.read")
        else:
            actions = "".join(a for a in match.group(2) if a in "rs")
            if actions:
                granted.append(f"system/{resource}.{actions}{match.group(3) or ''}")
    return granted


class FakeExportServer:
    """
    Minimal asynchronous export server with a SMART backend-services token endpoint.

    Every kick-off creates a job which stays pending for ``pending_polls``
    status requests and then completes with a one-file manifest. Only tokens
    issued by the token endpoint are accepted, and file downloads also
    check that the token's scopes cover the exported resource type.
    """

    def __init__(self, public_jwk: Optional[Dict[str, Any]] = None):
        self.public_jwk = public_jwk
        self.base_url = ""
        self.jwks_url: Optional[str] = None
        self.require_auth = True
        self.requires_access_token = True
        self.pending_polls = 1
        self.retry_after: Optional[str] = None
        self.metadata_status = 200
        self.smart_configuration_status = 200
        self.empty_output = False
        self.unsupported_params: Set[str] = set()

        self.hits: Counter = Counter()
        self.kick_offs: List[Dict[str, Any]] = []
        self.token_requests: List[Dict[str, Any]] = []
        self.tokens: Dict[str, List[str]] = {}
        self.jobs: Dict[str, Dict[str, Any]] = {}
        self._ids = itertools.count(1)
        self._tokens = itertools.count(1)

        self.app = web.Application()
        self.app.router.add_get("/metadata", self.metadata)
        self.app.router.add_get("/.well-known/smart-configuration", self.smart_configuration)
        self.app.router.add_get("/jwks.json", self.jwks)
        self.app.router.add_post("/auth/token", self.token)
        for path in ("/$export", "/Patient/$export", "/Group/{group_id}/$export"):
            self.app.router.add_route("GET", path, self.kick_off)
            self.app.router.add_route("POST", path, self.kick_off)
        self.app.router.add_get("/status/{job_id}", self.status)
        self.app.router.add_delete("/status/{job_id}", self.cancel)
        self.app.router.add_get("/files/{job_id}.ndjson", self.download)
        self.app.router.add_get("/attachments/{job_id}.txt", self.attachment)
        self.app.router.add_get("/always-401", self.always_401)

    @property
    def token_url(self) -> str:
        return f"{self.base_url}/auth/token"

    def _scopes(self, request: web.Request) -> Optional[List[str]]:
        """Scopes of the request's bearer token, or None if it was not issued here."""
        header = request.headers.get("Authorization", "")
        if not header.startswith("Bearer "):
            return None
        return self.tokens.get(header[len("Bearer "):])

    def _authorized(self, request: web.Request) -> bool:
        return self._scopes(request) is not None

    async def metadata(self, request: web.Request) -> web.Response:
        self.hits["metadata"] += 1
        if self.metadata_status != 200:
            return fhir_error("Not found", self.metadata_status)
        return web.json_response(
            {
                "resourceType": "CapabilityStatement",
                "instantiates": ["http://hl7.org/fhir/uv/bulkdata/CapabilityStatement/bulk-data"],
                "rest": [
                    {
                        "mode": "server",
                        "security": {
                            "extension": [
                                {
                                    "url": "http://fhir-registry.smarthealthit.org/StructureDefinition/oauth-uris",
                                    "extension": [{"url": "token", "valueUri": self.token_url}],
                                }
                            ]
                        },
                        "operation": [{"name": "export", "definition": "OperationDefinition/export"}],
                        "resource": [
                            {
                                "type": "Patient",
                                "operation": [
                                    {"name": "patient-export", "definition": "OperationDefinition/patient-export"}
                                ],
                            },
                            {
                                "type": "Group",
                                "operation": [
                                    {"name": "group-export", "definition": "OperationDefinition/group-export"}
                                ],
                            },
                        ],
                    }
                ],
            },
            content_type="application/fhir+json",
        )

    async def smart_configuration(self, request: web.Request) -> web.Response:
        self.hits["smart_configuration"] += 1
        if self.smart_configuration_status != 200:
            return fhir_error("Not found", self.smart_configuration_status)
        return web.json_response(
            {
                "token_endpoint": self.token_url,
                "token_endpoint_auth_methods_supported": ["private_key_jwt"],
                "grant_types_supported": ["client_credentials"],
            }
        )

    async def jwks(self, request: web.Request) -> web.Response:
        self.hits["jwks"] += 1
        return web.json_response({"keys": [self.public_jwk] if self.public_jwk else []})

    async def token(self, request: web.Request) -> web.Response:
        self.hits["token"] += 1
        form = await request.post()
        self.token_requests.append(
            {"form": dict(form), "authorization": request.headers.get("Authorization")}
        )

        if request.content_type != "application/x-www-form-urlencoded":
            return oauth_error("invalid_request", "Token requests must be form POSTs")

        grant_type = form.get("grant_type")
        if not grant_type:
            return oauth_error("invalid_request", "Missing grant_type parameter")
        if grant_type != "client_credentials":
            return oauth_error("unsupported_grant_type", f"Unsupported grant_type {grant_type}")

        # Basic credentials stand in for the client-credentials flow
        if not request.headers.get("Authorization", "").startswith("Basic "):
            error = self._check_client_assertion(form)
            if error is not None:
                return error

        if "scope" not in form:
            return oauth_error("invalid_request", "Missing scope parameter")
        granted = grant_scopes(form["scope"])
        if not granted:
            return oauth_error("invalid_scope", f'No scopes could be granted for "{form["scope"]}"')

        access_token = f"token-{next(self._tokens)}"
        self.tokens[access_token] = granted
        return web.json_response(
            {
                "access_token": access_token,
                "token_type": "bearer",
                "expires_in": 300,
                "scope": " ".join(granted),
            }
        )

    def _check_client_assertion(self, form) -> Optional[web.Response]:
        assertion_type = form.get("client_assertion_type")
        if not assertion_type:
            return oauth_error("invalid_request", "Missing client_assertion_type parameter")
        if assertion_type != JWT_BEARER_ASSERTION:
            return oauth_error("invalid_request", f"Invalid client_assertion_type {assertion_type}")

        assertion = form.get("client_assertion")
        if not assertion:
            return oauth_error("invalid_request", "Missing client_assertion parameter")

        try:
            header = jwt.get_unverified_header(assertion)
        except jwt.DecodeError as e:
            return oauth_error("invalid_request", f"Invalid client_assertion: {e}")

        if "jku" in header and header["jku"] != self.jwks_url:
            return oauth_error("invalid_client", f'Unregistered jku "{header["jku"]}"', 401)
        if not self.public_jwk or header.get("kid") != self.public_jwk.get("kid"):
            return oauth_error("invalid_client", "Unknown key id", 401)

        try:
            claims = jwt.decode(
                assertion,
                jwt.PyJWK(self.public_jwk).key,
                algorithms=[self.public_jwk["alg"]],
                audience=self.token_url,
                options={"require": ["exp", "iss", "sub", "jti"]},
            )
        except jwt.InvalidTokenError as e:
            return oauth_error("invalid_client", f"Invalid client_assertion: {e}", 401)

        if claims["iss"] != CLIENT_ID or claims["sub"] != CLIENT_ID:
            return oauth_error("invalid_client", "Unknown client", 401)
        return None

    async def _export_params(self, request: web.Request) -> Dict[str, List[Any]]:
        params: Dict[str, List[Any]] = {}
        if request.method == "POST":
            body = await request.json()
            for parameter in body.get("parameter", []):
                value = next(v for k, v in parameter.items() if k.startswith("value"))
                params.setdefault(parameter["name"], []).append(value)
        else:
            for name in request.query:
                params[name] = request.query.getall(name)
        return params

    async def kick_off(self, request: web.Request) -> web.Response:
        self.hits["kick_off"] += 1
        params = await self._export_params(request)
        self.kick_offs.append(
            {
                "method": request.method,
                "path": request.path,
                "params": params,
                "headers": request.headers.copy(),
            }
        )

        if self.require_auth and not self._authorized(request):
            return fhir_error("Unauthorized", 401)

        if request.headers.get("Accept") != "application/fhir+json":
            return fhir_error("Accept header must be application/fhir+json", 400)

        prefer = [p.strip() for p in request.headers.get("Prefer", "").split(",")]
        if "respond-async" not in prefer:
            return fhir_error("Prefer header must be respond-async", 400)

        for output_format in params.get("_outputFormat", []):
            if output_format not in SUPPORTED_OUTPUT_FORMATS:
                return fhir_error(f"Unsupported _outputFormat {output_format}", 400)

        errors = []
        for name in sorted(self.unsupported_params.intersection(params)):
            if "handling=lenient" not in prefer:
                return fhir_error(f"Unsupported parameter {name}", 400)
            errors.append(operation_outcome(f"Ignored unsupported parameter {name}"))

        job_id = str(next(self._ids))
        self.jobs[job_id] = {
            "remaining": self.pending_polls,
            "request": str(request.url),
            "type": (params.get("_type") or ["Patient"])[0],
            "errors": errors,
        }
        return web.Response(
            status=202,
            headers={"Content-Location": f"{self.base_url}/status/{job_id}"},
        )

    async def status(self, request: web.Request) -> web.Response:
        self.hits["status"] += 1
        job_id = request.match_info["job_id"]
        job = self.jobs.get(job_id)
        if job is None:
            return fhir_error("Export not found", 404)

        if job["remaining"] > 0:
            job["remaining"] -= 1
            headers = {"X-Progress": "in progress"}
            if self.retry_after is not None:
                headers["Retry-After"] = self.retry_after
            return web.Response(status=202, headers=headers)

        output = [
            {
                "type": job["type"],
                "url": f"{self.base_url}/files/{job_id}.ndjson",
                "count": 2,
            }
        ]
        return web.json_response(
            {
                "transactionTime": "2024-05-01T10:00:00Z",
                "request": job["request"],
                "requiresAccessToken": self.requires_access_token,
                "output": [] if self.empty_output else output,
                "error": job["errors"],
            }
        )

    async def cancel(self, request: web.Request) -> web.Response:
        self.hits["cancel"] += 1
        if self.jobs.pop(request.match_info["job_id"], None) is None:
            return fhir_error("Export not found", 404)
        return web.json_response(
            {
                "resourceType": "OperationOutcome",
                "issue": [{"severity": "information", "code": "informational", "diagnostics": "Export deleted"}],
            },
            status=202,
            content_type="application/fhir+json",
        )

    def _check_file_access(self, request: web.Request, resource_type: str) -> Optional[web.Response]:
        if not self.requires_access_token:
            return None
        scopes = self._scopes(request)
        if scopes is None:
            return fhir_error("Unauthorized", 401)
        resources = {scope.split("/", 1)[1].split(".", 1)[0] for scope in scopes}
        if "*" not in resources and resource_type not in resources:
            return fhir_error(f"Access to {resource_type} resources was not granted", 403)
        return None

    async def download(self, request: web.Request) -> web.Response:
        self.hits["download"] += 1
        job_id = request.match_info["job_id"]
        job = self.jobs.get(job_id)
        denied = self._check_file_access(request, job["type"] if job else "Patient")
        if denied is not None:
            return denied
        if job is None:
            return fhir_error("File not found", 404)

        if job["type"] == "DocumentReference":
            document = {
                "resourceType": "DocumentReference",
                "id": "1",
                "content": [
                    {
                        "attachment": {
                            "contentType": "text/plain",
                            "data": base64.b64encode(b"inline note").decode("ascii"),
                        }
                    },
                    {
                        "attachment": {
                            "contentType": "text/plain",
                            "url": f"{self.base_url}/attachments/{job_id}.txt",
                        }
                    },
                ],
            }
            return web.json_response(document, content_type="application/fhir+ndjson")

        return web.Response(text=NDJSON_BODY, content_type="application/fhir+ndjson")

    async def attachment(self, request: web.Request) -> web.Response:
        self.hits["attachment"] += 1
        denied = self._check_file_access(request, "DocumentReference")
        if denied is not None:
            return denied
        if request.match_info["job_id"] not in self.jobs:
            return fhir_error("File not found", 404)
        return web.Response(text="linked note")

    async def always_401(self, request: web.Request) -> web.Response:
        self.hits["always_401"] += 1
        return web.Response(status=401, text="Unauthorized")


@pytest.fixture(scope="session")
def private_jwk():
    """An ES256 private key as a JWK dictionary."""
    key = ec.generate_private_key(ec.SECP256R1())
    jwk = ECAlgorithm.to_jwk(key, as_dict=True)
    jwk.update({"kid": "test-key-1", "alg": "ES256"})
    return jwk


@pytest.fixture
def make_config(private_jwk):
    """Factory building a NormalizedConfig for a given base URL."""

    def factory(base_url: str = "http://localhost:9444/fhir", **overrides) -> NormalizedConfig:
        base_url = base_url.rstrip("/")
        data: Dict[str, Any] = {
            "baseURL": base_url,
            "systemExportEndpoint": "$export",
            "patientExportEndpoint": "Patient/$export",
            "groupExportEndpoint": "Group/1/$export",
            "authentication": {
                "type": "backend-services",
                "clientId": CLIENT_ID,
                "tokenEndpoint": f"{base_url}/auth/token",
                "privateKey": private_jwk,
            },
            "requests": {"timeout": 5000},
        }
        for key, value in overrides.items():
            if isinstance(value, dict) and isinstance(data.get(key), dict):
                data[key] = {**data[key], **value}
            else:
                data[key] = value
        return NormalizedConfig.from_dict(data)

    return factory


@pytest.fixture
def config(make_config):
    """A configuration pointing nowhere, for tests that make no requests."""
    return make_config()


@pytest.fixture
def api():
    """A TestAPI bound to a fresh Test."""
    return TestAPI(Test("Client test"))


@pytest.fixture
def fake_server(private_jwk):
    """The fake server state, before it is started. It knows the public half of ``private_jwk``."""
    return FakeExportServer({k: v for k, v in private_jwk.items() if k != "d"})


@pytest_asyncio.fixture
async def export_server(fake_server):
    """The fake export server, listening on a free local port."""
    server = TestServer(fake_server.app)
    await server.start_server()
    fake_server.base_url = str(server.make_url("/")).rstrip("/")
    fake_server.jwks_url = f"{fake_server.base_url}/jwks.json"
    try:
        yield fake_server
    finally:
        await server.close()


@pytest.fixture
def server_config(export_server, make_config):
    """Factory building a NormalizedConfig for the running fake server."""

    def factory(**overrides) -> NormalizedConfig:
        return make_config(export_server.base_url, **overrides)

    return factory
