"""
Assertions shared by the bundled conformance tests.

Each helper raises AssertionError with a message that includes the server's
own error message when there is one.
"""

import json
import re
from typing import Iterable, Optional, Union

from ..client.models import HttpResponse
from ..client.utils import get_error_message_from_response

JSON_CONTENT_TYPES = ("application/json", "application/json+fhir", "application/fhir+json")

OAUTH_ERROR_TYPES = (
    "invalid_request",
    "invalid_client",
    "invalid_grant",
    "unauthorized_client",
    "unsupported_grant_type",
    "invalid_scope",
)

# FHIR instant, e.g. 2024-05-01T10:00:00Z or 2024-05-01T10:00:00.123+02:00
REGEXP_INSTANT = re.compile(
    r"([0-9]([0-9]([0-9][1-9]|[1-9]0)|[1-9]00)|[1-9]000)-"
    r"(0[1-9]|1[0-2])-(0[1-9]|[1-2][0-9]|3[0-1])T([01][0-9]|2[0-3])"
    r":[0-5][0-9]:([0-5][0-9]|60)(\.[0-9]+)?(Z|(\+|-)((0[0-9]|1[0-3])"
    r":[0-5][0-9]|14:00))"
)


def _concat(*messages: Optional[str]) -> str:
    return ". ".join(m.strip().rstrip(".") for m in messages if m and m.strip())


def _is_json(response: HttpResponse) -> bool:
    return response.content_type.lower().split(";")[0].strip() in JSON_CONTENT_TYPES


def expect_response(response: Optional[HttpResponse], prefix: str = "") -> HttpResponse:
    if response is None:
        raise AssertionError(_concat(prefix, "No response was received"))
    return response


def expect_status_code(
    response: Optional[HttpResponse],
    code: Union[int, Iterable[int]],
    prefix: str = "",
) -> None:
    response = expect_response(response, prefix)
    codes = [code] if isinstance(code, int) else list(code)
    if response.status not in codes:
        raise AssertionError(
            _concat(
                prefix,
                f"Unexpected status code {response.status} (expected {' or '.join(map(str, codes))})",
                get_error_message_from_response(response),
            )
        )


def expect_client_error(response: Optional[HttpResponse], prefix: str = "") -> None:
    response = expect_response(response, prefix)
    if not 400 <= response.status <= 499:
        raise AssertionError(
            _concat(prefix, f"Expected client error (4XX status code). Got {response.status}")
        )


def expect_json_response(response: Optional[HttpResponse], prefix: str = "") -> None:
    response = expect_response(response, prefix)
    if not _is_json(response):
        raise AssertionError(
            _concat(
                prefix,
                f"The server must reply with JSON content-type header ({' | '.join(JSON_CONTENT_TYPES)})",
                f'Got "{response.content_type}"',
            )
        )


def expect_operation_outcome(response: Optional[HttpResponse], prefix: str = "") -> None:
    expect_json_response(response, prefix)
    body = response.body if isinstance(response.body, dict) else {}
    if body.get("resourceType") != "OperationOutcome":
        raise AssertionError(_concat(prefix, "The response body is not an OperationOutcome"))


def expect_successful_kick_off(response: Optional[HttpResponse], prefix: str = "") -> None:
    expect_status_code(response, 202, _concat(prefix, "Kick-off failed"))
    if not response.content_location:
        raise AssertionError(
            _concat(prefix, "The kick-off response did not include a content-location header")
        )


def expect_failed_kick_off(response: Optional[HttpResponse], prefix: str = "") -> None:
    expect_client_error(response, prefix)
    if response.body:
        expect_operation_outcome(response, prefix)


def expect_ndjson_response(response: Optional[HttpResponse], prefix: str = "") -> None:
    response = expect_response(response, prefix)
    if not response.content_type.startswith("application/fhir+ndjson"):
        raise AssertionError(
            _concat(
                prefix,
                f'The server must reply with FHIR NDJSON content-type header. Got "{response.content_type}"',
                get_error_message_from_response(response),
            )
        )
    if not isinstance(response.body, str) or not response.body:
        raise AssertionError(_concat(prefix, "The response body is empty"))

    for number, line in enumerate(response.body.splitlines(), start=1):
        if not line.strip():
            continue
        try:
            json.loads(line)
        except ValueError as e:
            raise AssertionError(_concat(prefix, f"Failed to parse line {number}: {e}"))


def expect_successful_download(response: Optional[HttpResponse], prefix: str = "") -> None:
    expect_status_code(response, [200, 304], prefix)
    expect_ndjson_response(response, prefix)


def expect_unauthorized(response: Optional[HttpResponse], prefix: str = "") -> None:
    acceptable = {401: "Unauthorized", 406: "Not Acceptable"}
    expect_status_code(response, list(acceptable), prefix)

    # Some servers send no reason phrase at all
    if response.reason and response.reason not in acceptable.values():
        raise AssertionError(
            _concat(
                prefix,
                f'Unexpected status text "{response.reason}" (expected {" or ".join(acceptable.values())})',
            )
        )


def is_json_response(response: Optional[HttpResponse]) -> bool:
    return response is not None and _is_json(response)


def expect_oauth_error(response: Optional[HttpResponse], prefix: str = "") -> None:
    expect_json_response(response, prefix)
    expect_client_error(response, prefix)

    body = response.body if isinstance(response.body, dict) else {}
    got = f"Got {get_error_message_from_response(response)}"
    error = body.get("error")

    if error is None:
        raise AssertionError(_concat(prefix, got, "The 'error' property of OAuth error responses is required"))
    if not isinstance(error, str):
        raise AssertionError(
            _concat(prefix, got, "The 'error' property of OAuth error responses must be a string")
        )
    if error not in OAUTH_ERROR_TYPES:
        raise AssertionError(_concat(prefix, got, f"Invalid OAuth error 'error' property \"{error}\""))

    description = body.get("error_description")
    if description and not isinstance(description, str):
        raise AssertionError(
            _concat(
                prefix,
                got,
                "The 'error_description' property of OAuth error responses must be a string if present",
            )
        )

    uri = body.get("error_uri")
    if uri and not (isinstance(uri, str) and re.match(r"^https?://.+", uri)):
        raise AssertionError(
            _concat(prefix, got, "If present, the 'error_uri' property of OAuth error responses must be an url")
        )


def expect_oauth_error_type(response: Optional[HttpResponse], error_type: str, prefix: str = "") -> None:
    expect_oauth_error(response, prefix)
    if response.body["error"] != error_type:
        raise AssertionError(
            _concat(
                prefix,
                f"Got {get_error_message_from_response(response)}",
                f"The OAuth error 'error' property is expected to equal \"{error_type}\"",
            )
        )


def expect_successful_auth(response: Optional[HttpResponse], prefix: str = "") -> None:
    expect_json_response(response, prefix)

    body = response.body if isinstance(response.body, dict) else {}
    got = f"Got {get_error_message_from_response(response)}"

    def check(passed: bool, message: str) -> None:
        if not passed:
            raise AssertionError(_concat(prefix, got, message))

    access_token = body.get("access_token")
    check(access_token is not None, 'The "access_token" property of the token response is missing')
    check(isinstance(access_token, str), 'The "access_token" property of the token response must be string')
    check(bool(access_token), 'The "access_token" property of the token response cannot be empty')

    expires_in = body.get("expires_in")
    check(expires_in is not None, 'The "expires_in" property of the token response is missing')
    check(
        isinstance(expires_in, (int, float)) and not isinstance(expires_in, bool),
        'The "expires_in" property of the token response must be a number',
    )
    check(expires_in > 0, 'The "expires_in" property of the token response must be greater than 0')

    check(
        bool(re.fullmatch(r"bearer", str(body.get("token_type", "")), re.I)),
        'The "token_type" property of the token response must be "bearer"',
    )

    scope = body.get("scope")
    check(scope is not None, 'The "scope" property of the token response is missing')
    check(isinstance(scope, str), 'The "scope" property of the token response must be a string')
    check(bool(scope), 'The "scope" property of the token response cannot be empty')
