"""
Export protocol client.

Implements every interaction with a bulk-data server that tests may need:
capability statement, authorization, kick-off, status polling, downloads
and cancellation. The OAuth and polling mechanics stay hidden behind
intent-revealing coroutines so that test bodies remain readable.
"""

import asyncio
import base64
import json
import re
import time
from typing import Any, Dict, List, Optional, Union
from urllib.parse import urlencode, urljoin

import aiohttp

from .. import __version__
from ..core.exceptions import (
    AuthorizationError,
    ExportError,
    MissingCapabilityStatementError,
    NotSupportedError,
    UnknownParameterError,
)
from ..core.logging_config import get_logger, log_http_call
from ..tree.api import TestAPI
from ..tree.console import LogType
from .auth import create_auth_token
from .models import HttpError, HttpRequest, HttpResponse, RequestResult
from .settings import AuthType, NormalizedConfig
from .utils import (
    format_http_error,
    get_error_message_from_response,
    parse_retry_after,
    status_poll_delay,
    wait,
)


USER_AGENT = f"BDT / {__version__}"

FHIR_JSON_ACCEPT = "application/fhir+json,application/json+fhir,application/json"
JWT_BEARER_ASSERTION = "urn:ietf:params:oauth:client-assertion-type:jwt-bearer"

EXPORT_TYPES = ("system", "patient", "group")

_JSON_CONTENT_TYPE = re.compile(r"^application/(json|fhir\+json|json\+fhir)", re.I)

_UNSET = object()

ParamValue = Union[str, int, List[Union[str, int]]]


class BulkDataClient:
    """
    One export session against the tested server.

    Holds the cached access token, the last kick-off and status exchanges
    and the memoized CapabilityStatement. Create one per test.
    """

    def __init__(self, config: NormalizedConfig, api: TestAPI):
        self.config = config
        self.api = api
        self.logger = get_logger(__name__)

        self.access_token: Optional[str] = None
        self.kick_off_request: Optional[HttpRequest] = None
        self.kick_off_response: Optional[HttpResponse] = None
        self.status_request: Optional[HttpRequest] = None
        self.status_response: Optional[HttpResponse] = None

        self._capability_statement: Any = _UNSET

    # Metadata ----------------------------------------------------------------

    async def get_capability_statement(self) -> Dict[str, Any]:
        """
        Fetch the CapabilityStatement of the tested server.

        The fetch happens at most once per client, and a failed fetch is
        remembered as well.

        Raises:
            MissingCapabilityStatementError: If the server did not return a
                JSON object from ``metadata``.
        """
        if self._capability_statement is _UNSET:
            result = await self.request(
                "metadata?_format=json",
                skip_auth=True,
                headers={"accept": FHIR_JSON_ACCEPT},
                request_label="CapabilityStatement Request",
                response_label="CapabilityStatement Response",
            )
            if result.error or not isinstance(result.body, dict):
                self._capability_statement = None
            else:
                self._capability_statement = result.body

        if not self._capability_statement:
            base_url = self.config.base_url.rstrip("/")
            raise MissingCapabilityStatementError(
                f'No capability statement found at "{base_url}/metadata"',
                base_url=self.config.base_url,
            )

        return self._capability_statement

    # Authorization -----------------------------------------------------------

    def create_authentication_token(self, **overrides) -> str:
        """
        Create a signed authentication token using the configured defaults.

        Any argument of ``create_auth_token`` can be overridden. ``header``
        and ``claims`` are merged over the configured custom headers and
        claims for this call only.
        """
        auth = self.config.authentication

        header = dict(auth.custom_token_headers)
        header.update(overrides.pop("header", None) or {})
        claims = dict(auth.custom_token_claims)
        claims.update(overrides.pop("claims", None) or {})

        options = {
            "private_key": auth.private_key,
            "client_id": auth.client_id,
            "token_endpoint": auth.token_endpoint,
            "algorithm": auth.token_sign_algorithm,
            "expires_in": auth.token_expires_in,
            "jwks_url": auth.jwks_url,
        }
        options.update(overrides)

        return create_auth_token(header=header, claims=claims, **options)

    async def authorize(
        self,
        scope: Optional[str] = None,
        request_label: str = "Authorization Request",
        response_label: str = "Authorization Response",
    ) -> str:
        """
        Make an authorization request and return the access token.

        Raises:
            AuthorizationError: If the configured auth type cannot authorize
                or the token response has no access token.
        """
        auth = self.config.authentication

        if auth.type is AuthType.NONE:
            raise AuthorizationError(
                "Unable to authorize! This server does not support authentication "
                '(according to the "type" option).',
                auth_type=auth.type.value,
            )

        if not auth.token_endpoint:
            raise AuthorizationError(
                'Unable to authorize! No "tokenEndpoint" is configured.',
                auth_type=auth.type.value,
            )

        if auth.type is AuthType.CLIENT_CREDENTIALS:
            if not auth.client_secret:
                raise AuthorizationError(
                    'Unable to authorize! A "clientSecret" option is needed for '
                    "client-credentials authentication.",
                    auth_type=auth.type.value,
                    token_endpoint=auth.token_endpoint,
                )
            credentials = base64.b64encode(
                f"{auth.client_id}:{auth.client_secret}".encode("utf-8")
            ).decode("ascii")
            result = await self.request(
                auth.token_endpoint,
                method="POST",
                headers={"authorization": f"Basic {credentials}", "accept": "application/json"},
                data={"grant_type": "client_credentials", "scope": scope or auth.scope},
                request_label=request_label,
                response_label=response_label,
            )
        else:
            result = await self.request(
                auth.token_endpoint,
                method="POST",
                headers={"accept": "application/json"},
                data={
                    "scope": scope or auth.scope,
                    "grant_type": "client_credentials",
                    "client_assertion_type": JWT_BEARER_ASSERTION,
                    "client_assertion": self.create_authentication_token(),
                },
                request_label=request_label,
                response_label=response_label,
            )

            if result.status_code == 404:
                self.api.console.md(
                    "Please make sure you are using valid `tokenEndpoint` configuration "
                    f"option (currently `{auth.token_endpoint}`)",
                    LogType.INFO,
                    "Suggestion",
                )

        body = result.body if isinstance(result.body, dict) else {}
        token = body.get("access_token")
        if not token:
            message = "Unable to authorize. No access token returned."
            if result.error:
                message += f" {result.error.message}"
            raise AuthorizationError(
                message,
                auth_type=auth.type.value,
                token_endpoint=auth.token_endpoint,
            )

        return token

    async def get_access_token(self) -> str:
        """Return the cached access token, authorizing first if needed."""
        if not self.access_token:
            self.access_token = await self.authorize()
        return self.access_token

    # Transport ---------------------------------------------------------------

    async def request(
        self,
        url: str,
        method: str = "GET",
        headers: Optional[Dict[str, Optional[str]]] = None,
        params: Optional[Dict[str, ParamValue]] = None,
        json: Any = None,
        data: Any = None,
        skip_auth: bool = False,
        allow_redirects: bool = True,
        request_label: str = "Request",
        response_label: str = "Response",
        _retried: bool = False,
    ) -> RequestResult:
        """
        Make a request to the tested server.

        Relative URLs are resolved against the base URL. Configured custom
        headers are added, then ``headers``; a None value removes a header.
        An access token is attached unless ``skip_auth`` is set, an
        authorization header is already present, auth is disabled or the
        target is the token endpoint. If a request carrying that token gets
        a 401, the token is dropped and the request repeated exactly once.
        """
        url = self._resolve_url(url)
        if params:
            url = _append_query(url, params)

        request_headers: Dict[str, str] = {"user-agent": USER_AGENT}
        for name, value in self.config.requests.custom_headers.items():
            request_headers[name.lower()] = value
        for name, value in (headers or {}).items():
            if value is None:
                request_headers.pop(name.lower(), None)
            else:
                request_headers[name.lower()] = value

        authorized = False
        if self._needs_token(url, request_headers, skip_auth):
            request_headers["authorization"] = f"Bearer {await self.get_access_token()}"
            authorized = True

        request = HttpRequest(
            method=method,
            url=url,
            headers=dict(request_headers),
            payload=json if json is not None else data,
        )
        options = {
            "method": method,
            "url": url,
            "headers": dict(request_headers),
            "skip_auth": skip_auth,
            "allow_redirects": allow_redirects,
            "timeout": self.config.requests.timeout,
            "strict_ssl": self.config.requests.strict_ssl,
        }
        self.api.console.request(request, LogType.LOG, request_label)

        start_time = time.monotonic()
        try:
            response = await self._send(method, url, request_headers, json, data, allow_redirects)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            duration = time.monotonic() - start_time
            reason = str(e) or e.__class__.__name__
            log_http_call(self.logger, method, url, None, duration, error=reason)
            error = HttpError(f"{method} {url} failed: {reason}", request=request)
            return RequestResult(response=None, request=request, options=options, error=error)

        log_http_call(self.logger, method, url, response.status, time.monotonic() - start_time)
        self.api.console.response(response, LogType.LOG, response_label)

        if response.status == 401 and authorized and not _retried:
            self.access_token = None
            return await self.request(
                url,
                method=method,
                headers=headers,
                json=json,
                data=data,
                skip_auth=skip_auth,
                allow_redirects=allow_redirects,
                request_label=request_label,
                response_label=response_label,
                _retried=True,
            )

        error = None
        if response.status >= 400:
            error = HttpError(
                format_http_error(method, url, response),
                request=request,
                response=response,
            )

        return RequestResult(
            response=response,
            request=request,
            options=options,
            error=error,
            body=response.body,
        )

    async def _send(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        json_body: Any,
        data: Any,
        allow_redirects: bool,
    ) -> HttpResponse:
        timeout = aiohttp.ClientTimeout(total=self.config.requests.timeout / 1000)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.request(
                method,
                url,
                headers=headers,
                json=json_body,
                data=data,
                ssl=self.config.requests.strict_ssl,
                allow_redirects=allow_redirects,
            ) as resp:
                raw = await resp.read()
                text = raw.decode(resp.charset or "utf-8", errors="replace")
                response_headers = {name.lower(): value for name, value in resp.headers.items()}

        body: Any = text
        content_type = response_headers.get("content-type", "")
        if _JSON_CONTENT_TYPE.match(content_type) and text.strip():
            try:
                body = json.loads(text)
            except ValueError:
                self.logger.debug(f"Response from {url} is not valid JSON")

        return HttpResponse(
            status=resp.status,
            reason=resp.reason or "",
            headers=response_headers,
            body=body,
            text=text,
            url=str(resp.url),
        )

    def _resolve_url(self, url: str) -> str:
        if re.match(r"^https?://", url, re.I):
            return url
        base_url = self.config.base_url.rstrip("/") + "/"
        return urljoin(base_url, url.lstrip("/"))

    def _needs_token(self, url: str, headers: Dict[str, str], skip_auth: bool) -> bool:
        auth = self.config.authentication
        return (
            auth.type is not AuthType.NONE
            and not skip_auth
            and "authorization" not in headers
            and bool(auth.token_endpoint)
            and url != auth.token_endpoint
        )

    # Export flow -------------------------------------------------------------

    async def kick_off(
        self,
        type: Optional[str] = None,
        params: Optional[Dict[str, ParamValue]] = None,
        method: str = "GET",
        headers: Optional[Dict[str, Optional[str]]] = None,
        skip_auth: bool = False,
        label_prefix: str = "",
        json: Optional[Dict[str, Any]] = None,
    ) -> RequestResult:
        """
        Start an export.

        Args:
            type: "system", "patient" or "group". Defaults to the first
                configured export endpoint.
            params: Export parameters. Sent as repeated query parameters for
                GET and as a FHIR Parameters resource for POST.
            method: "GET" or "POST".
            headers: Header overrides. A None value removes that header,
                e.g. ``{"accept": None}``.
            skip_auth: Do not attach an access token.
            label_prefix: Prefix for the console labels.
            json: Explicit POST body. Params are appended to its parameters.

        Raises:
            NotSupportedError: If the requested export type has no endpoint.
            UnknownParameterError: If a POST param cannot be encoded.
        """
        url = self._resolve_url(self._export_endpoint(type))
        method = method.upper()

        body = None
        if method == "POST":
            body = dict(json) if json else {"resourceType": "Parameters"}
            body["parameter"] = list(body.get("parameter") or [])
            body["parameter"].extend(_export_parameters(params or {}))
        elif params:
            url = _append_query(url, params)

        request_headers: Dict[str, Optional[str]] = {
            "accept": "application/fhir+json",
            "prefer": "respond-async",
        }
        request_headers.update(headers or {})

        result = await self.request(
            url,
            method=method,
            headers=request_headers,
            json=body,
            skip_auth=skip_auth,
            allow_redirects=False,
            request_label=f"{label_prefix}Kick-off Request",
            response_label=f"{label_prefix}Kick-off Response",
        )

        self.kick_off_request = result.request
        self.kick_off_response = result.response

        if result.error and result.status_code == 401 and not skip_auth:
            self._suggest_auth_fixes()

        return result

    def _export_endpoint(self, type: Optional[str]) -> str:
        endpoints = self.config.export_endpoints

        if type is None:
            path = next((endpoints[t] for t in EXPORT_TYPES if endpoints[t]), None)
            if not path:
                raise NotSupportedError("No export endpoints defined in configuration")
            return path

        if type not in endpoints:
            raise ValueError(f'Invalid export type "{type}". Must be one of {EXPORT_TYPES}')

        if not endpoints[type]:
            raise NotSupportedError(
                f"{type.capitalize()}-level export is not supported by this server",
                feature=f"{type}-export",
            )
        return endpoints[type]

    def _suggest_auth_fixes(self) -> None:
        auth = self.config.authentication

        def suggest(message: str) -> None:
            self.api.console.md(message, LogType.INFO, "Suggestion")

        if auth.optional:
            suggest("Try setting the `optional` authentication option to `false`")

        if not auth.client_id:
            suggest("Set the `clientId` configuration option")
        else:
            suggest("Verify that you have the correct `clientId` configuration option")

        if auth.type is AuthType.NONE:
            suggest(
                'Your authentication `type` is set to "none". Use "backend-services" '
                'or "client-credentials" instead.'
            )
        elif auth.type is AuthType.CLIENT_CREDENTIALS:
            if not auth.client_secret:
                suggest(
                    "You are using client-credentials auth but you have not set the "
                    "`clientSecret` configuration option"
                )
            else:
                suggest("Verify that you have the correct `clientSecret` configuration option")
        elif not auth.private_key:
            suggest(
                "You are using backend-services auth but you don't have a `privateKey`. "
                "Check the `privateKey` configuration option"
            )
        else:
            suggest("Verify that you have the correct `privateKey` configuration option")

    def _status_location(self, action: str) -> str:
        if self.kick_off_response is None:
            raise ExportError(
                f"Trying to {action} but there was no kick-off response",
                operation=action,
            )

        location = self.kick_off_response.content_location
        if not location:
            raise ExportError(
                f"Trying to {action} but the kick-off response did not include a "
                f"content-location header. "
                f"{get_error_message_from_response(self.kick_off_response)}",
                operation=action,
                status_code=self.kick_off_response.status,
            )
        return location

    async def status(self) -> RequestResult:
        """Make one request to the status endpoint of the started export."""
        location = self._status_location("check status")
        result = await self.request(
            location,
            request_label="Status Request",
            response_label="Status Response",
        )
        self.status_request = result.request
        self.status_response = result.response
        return result

    async def wait_for_export(self, attempt: int = 1) -> RequestResult:
        """
        Poll the status endpoint until it stops responding with 202.

        Waits ``min(2000 + 1000 * attempt, 10000)`` ms between polls and
        returns the result of the last one.
        """
        location = self._status_location("wait for export")

        while True:
            result = await self.request(
                location,
                request_label=f"Status Request {attempt}",
                response_label=f"Status Response {attempt}",
            )
            self.status_request = result.request
            self.status_response = result.response

            if result.status_code != 202:
                return result

            await wait(status_poll_delay(attempt))
            attempt += 1

    async def get_export_manifest(self, prior_response: HttpResponse, attempt: int = 1) -> Dict[str, Any]:
        """
        Poll the status endpoint advertised by ``prior_response`` and return
        the export manifest.

        Honors the ``Retry-After`` header of pending responses.

        Raises:
            ExportError: If there is no content-location to poll or the
                export ends with anything other than 200.
        """
        location = prior_response.content_location if prior_response else None
        if not location:
            raise ExportError(
                "Trying to wait for export but the kick-off response did not "
                "include a content-location header",
                operation="get export manifest",
            )

        while True:
            result = await self.request(
                location,
                request_label=f"Status Request {attempt}",
                response_label=f"Status Response {attempt}",
            )

            if result.status_code == 202:
                seconds = parse_retry_after(result.response.headers.get("retry-after"), attempt)
                await wait(seconds * 1000)
                attempt += 1
                continue

            if result.status_code == 200:
                return result.body

            detail = result.error.message if result.error else get_error_message_from_response(result.response)
            self.logger.warning(f"Could not get export manifest: {detail}")
            raise ExportError(
                f"Could not get export manifest. {detail}",
                operation="get export manifest",
                status_code=result.status_code,
            )

    async def get_export_response(self) -> Optional[HttpResponse]:
        """Start an export if needed, wait for it and return the final status response."""
        if self.status_response is None:
            if self.kick_off_response is None:
                await self.kick_off()
            await self.wait_for_export()
        return self.status_response

    async def download_file_at(self, index: int, skip_auth: Optional[bool] = None) -> RequestResult:
        """
        Start an export if needed, wait for it, and download ``output[index]``.

        ``skip_auth`` defaults to True only when the manifest says
        ``requiresAccessToken: false``.

        Raises:
            ExportError: If the manifest has no file at ``index``.
        """
        if self.kick_off_request is None:
            await self.kick_off()
        if self.status_request is None:
            await self.wait_for_export()

        manifest = self.status_response.body if self.status_response else None
        try:
            if index < 0:
                raise IndexError(index)
            file_url = manifest["output"][index]["url"]
        except (TypeError, KeyError, IndexError) as e:
            raise ExportError(
                f'No file was found at "output[{index}]" in the status response.',
                operation="download",
            ) from e

        if skip_auth is None:
            skip_auth = manifest.get("requiresAccessToken") is False

        return await self.download_file(file_url, skip_auth=skip_auth)

    async def download_file(
        self,
        url: str,
        headers: Optional[Dict[str, Optional[str]]] = None,
        skip_auth: bool = False,
    ) -> RequestResult:
        """Download one export file."""
        request_headers: Dict[str, Optional[str]] = {"accept": "application/fhir+ndjson"}
        request_headers.update(headers or {})
        return await self.request(
            url,
            headers=request_headers,
            skip_auth=skip_auth,
            request_label="Download Request",
            response_label="Download Response",
        )

    async def cancel_if_started(
        self, kick_off_response: Optional[HttpResponse], label_prefix: str = ""
    ) -> Optional[RequestResult]:
        """
        Cancel the export if ``kick_off_response`` is a successful kick-off.

        Returns None otherwise, so it is safe to call from cleanup hooks.
        """
        if (
            kick_off_response is not None
            and kick_off_response.status == 202
            and kick_off_response.content_location
        ):
            return await self.cancel(kick_off_response, label_prefix)
        return None

    async def cancel(self, kick_off_response: Optional[HttpResponse], label_prefix: str = "Unlabeled ") -> RequestResult:
        """
        Cancel an export by sending DELETE to its status endpoint.

        Raises:
            ExportError: If ``kick_off_response`` is not a 202 response with
                a content-location header.
        """
        if kick_off_response is None:
            raise ExportError("Failed to cancel export: there was no kick-off response", operation="cancel")

        if kick_off_response.status != 202:
            raise ExportError(
                "Failed to cancel export: the kick-off response status was "
                f"{kick_off_response.status} instead of 202. "
                f"{get_error_message_from_response(kick_off_response)}",
                operation="cancel",
                status_code=kick_off_response.status,
            )

        if not kick_off_response.content_location:
            raise ExportError(
                "Failed to cancel export: the kick-off response did not include a content-location header",
                operation="cancel",
                status_code=kick_off_response.status,
            )

        return await self.request(
            kick_off_response.content_location,
            method="DELETE",
            request_label=f"{label_prefix}Cancellation Request",
            response_label=f"{label_prefix}Cancellation Response",
        )


def _as_list(value: ParamValue) -> List[Union[str, int]]:
    return list(value) if isinstance(value, (list, tuple)) else [value]


def _export_parameters(params: Dict[str, ParamValue]) -> List[Dict[str, Any]]:
    """Encode kick-off params as FHIR Parameters entries."""
    parameters: List[Dict[str, Any]] = []

    for name, value in params.items():
        if name == "_since":
            parameters.append({"name": name, "valueInstant": value})
        elif name == "_outputFormat":
            parameters.append({"name": name, "valueString": value})
        elif name == "patient":
            parameters.extend(
                {"name": name, "valueReference": {"reference": f"Patient/{v}"}}
                for v in _as_list(value)
            )
        elif name in ("_type", "_elements", "_typeFilter", "includeAssociatedData"):
            parameters.extend({"name": name, "valueString": v} for v in _as_list(value))
        else:
            raise UnknownParameterError(name)

    return parameters


def _append_query(url: str, params: Dict[str, ParamValue]) -> str:
    pairs = [(name, str(v)) for name, value in params.items() for v in _as_list(value)]
    return url + ("&" if "?" in url else "?") + urlencode(pairs)
