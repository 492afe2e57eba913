"""
Authorization checks for the kick-off endpoints and the token endpoint.

The token endpoint tests share a ``before_each`` hook which checks that the
server uses SMART Backend Services and builds a valid token request form.
Each test then breaks exactly one part of that form.
"""

import re
from functools import partial

from cryptography.hazmat.primitives.asymmetric import ec
from jwt.algorithms import ECAlgorithm

from ..client.bulk_data_client import EXPORT_TYPES, JWT_BEARER_ASSERTION, BulkDataClient
from ..client.settings import AuthType
from .expectations import (
    expect_oauth_error,
    expect_oauth_error_type,
    expect_operation_outcome,
    expect_successful_auth,
    expect_unauthorized,
    is_json_response,
)

TOKEN_FORM_PARAMS = ["grant_type", "client_assertion_type", "scope", "client_assertion"]

V1_SCOPES = [
    "system/*.*",
    "system/*.read",
    "system/Patient.*",
    "system/Patient.read",
    "system/Patient.write",
]

V2_SCOPES = [
    "system/*.cruds",
    "system/*.rs",
    "system/Patient.cruds",
    "system/Patient.rs",
    "system/Patient.rs?a=b",
]

V2_MUTATION_SCOPES = [
    "system/Patient.c",
    "system/Patient.cu",
    "system/Patient.cd",
    "system/Patient.cud",
    "system/Patient.ud",
    "system/Patient.d",
    "system/Patient.u",
]


# Kick-off ---------------------------------------------------------------------


async def requires_authorization_header(config, api, context, export_type):
    api.prerequisite(
        {
            "assertion": config.authentication.type is not AuthType.NONE,
            "message": "This server does not support authorization",
        },
        {
            "assertion": not config.authentication.optional,
            "message": "Authorization is optional for this server",
        },
    )

    client = BulkDataClient(config, api)
    result = await client.kick_off(type=export_type, skip_auth=True)
    await client.cancel_if_started(result.response)

    expect_unauthorized(
        result.response,
        "The server must not accept kick-off requests without authorization header",
    )

    # Replying with an OperationOutcome is optional, but JSON must be one
    if is_json_response(result.response):
        expect_operation_outcome(
            result.response, "The body SHALL be a FHIR OperationOutcome resource in JSON format"
        )


async def rejects_invalid_token(config, api, context, export_type):
    api.prerequisite(
        {
            "assertion": config.authentication.type is not AuthType.NONE,
            "message": "This server does not support authorization",
        }
    )

    client = BulkDataClient(config, api)
    result = await client.kick_off(
        type=export_type,
        skip_auth=True,
        headers={"authorization": "Bearer invalidToken"},
    )
    await client.cancel_if_started(result.response)

    expect_unauthorized(
        result.response,
        "The server must not accept kick-off requests with invalid token in the authorization header",
    )
    expect_operation_outcome(
        result.response, "The response body SHALL be a FHIR OperationOutcome resource in JSON format"
    )


# Token endpoint ---------------------------------------------------------------


def prepare_token_request(config, api, context):
    auth = config.authentication
    api.prerequisite(
        {
            "assertion": auth.type is AuthType.BACKEND_SERVICES,
            "message": (
                "This test is only applicable for servers that support "
                "SMART Backend Services authorization."
            ),
        },
        {
            "assertion": auth.private_key,
            "message": "No privateKey configuration found for this server.",
        },
        {
            "assertion": auth.token_endpoint,
            "message": "No tokenEndpoint configuration found for this server.",
        },
        {
            "assertion": auth.client_id,
            "message": "No clientId found in configuration",
        },
    )

    client = BulkDataClient(config, api)
    context["token_client"] = client
    context["token_form"] = {
        "grant_type": "client_credentials",
        "client_assertion_type": JWT_BEARER_ASSERTION,
        "scope": auth.scope,
        "client_assertion": client.create_authentication_token(),
    }


async def _request_token(config, context, **form):
    """POST the prepared form with ``form`` overrides; a None value omits that field."""
    data = {**context["token_form"], **form}
    result = await context["token_client"].request(
        config.authentication.token_endpoint,
        method="POST",
        headers={"accept": "application/json"},
        data={name: value for name, value in data.items() if value is not None},
        request_label="Token Request",
        response_label="Token Response",
    )
    return result.response


async def clients_can_authorize(config, api, context):
    response = await _request_token(config, context)
    expect_successful_auth(response, "Authorization failed")


async def requires_form_post(config, api, context):
    result = await context["token_client"].request(
        config.authentication.token_endpoint,
        method="POST",
        headers={"content-type": "application/json", "accept": "application/json"},
        request_label="Token Request",
        response_label="Token Response",
    )
    expect_oauth_error(
        result.response,
        'Authorization should fail if a content-type header other than '
        '"application/x-www-form-urlencoded" is sent',
    )


async def requires_form_param(config, api, context, param):
    response = await _request_token(config, context, **{param: None})
    expect_oauth_error(
        response,
        f'Authorization should fail if the "{param}" parameter is omitted from the POST body',
    )


async def validates_form_param(config, api, context, param):
    response = await _request_token(config, context, **{param: "invalid test value"})
    expect_oauth_error(
        response,
        f'Authorization should fail if the "{param}" parameter of the POST body is invalid',
    )


async def _request_with_assertion(config, context, **overrides):
    assertion = context["token_client"].create_authentication_token(**overrides)
    return await _request_token(config, context, client_assertion=assertion)


async def validates_audience(config, api, context):
    response = await _request_with_assertion(config, context, claims={"aud": "test-bad-aud-value"})
    expect_oauth_error(
        response,
        'Authorization should fail if the "aud" claim of the authentication token is invalid',
    )


async def validates_issuer(config, api, context):
    response = await _request_with_assertion(config, context, claims={"iss": "test-iss-value"})
    expect_oauth_error(
        response,
        'Authorization should fail if the "iss" claim of the authentication token is invalid',
    )


async def rejects_unregistered_client(config, api, context):
    response = await _request_with_assertion(
        config, context, claims={"iss": "test-bad-client-id", "sub": "test-bad-client-id"}
    )
    expect_oauth_error(
        response,
        'Authorization should fail if the "iss" or "sub" claims of the authentication token '
        "do not equal the client's client_id",
    )


async def rejects_scope(config, api, context, scope, message):
    response = await _request_token(config, context, scope=scope)
    expect_oauth_error_type(response, "invalid_scope", message)


async def handles_scopes(config, api, context, scopes, forbidden):
    for scope in scopes:
        response = await _request_token(config, context, scope=scope)

        if response is not None and response.status == 200:
            expect_successful_auth(
                response,
                f'If the server supports the "{scope}" scope, then it must reply with valid token response',
            )
            if forbidden.search(response.body["scope"]):
                raise AssertionError(
                    f'Servers should not grant any write scopes. Got "{response.body["scope"]}" '
                    f'for "{scope}"'
                )
        else:
            expect_oauth_error_type(
                response,
                "invalid_scope",
                f'It appears that the "{scope}" scope is not supported by the server. '
                "In this case we expect a proper OAuth error response from the token endpoint",
            )


async def accepts_scope(config, api, context, scope):
    response = await _request_token(config, context, scope=scope)
    expect_successful_auth(
        response, f'The authorization attempt should be successful with a "{scope}" scope'
    )


async def rejects_mutation_scopes(config, api, context, scopes):
    for scope in scopes:
        response = await _request_token(config, context, scope=scope)
        expect_oauth_error_type(
            response,
            "invalid_scope",
            f"The authorization attempt must fail for explicit mutation scopes like '{scope}'",
        )


async def supports_mixed_scopes(config, api, context):
    requested = "system/Patient.read system/Observation.rs"
    response = await _request_token(config, context, scope=requested)
    expect_successful_auth(
        response,
        f'If the server supports scopes with mixed versions like "{requested}", '
        "then it must reply with valid token response",
    )

    granted = response.body["scope"].split()
    if len(granted) != 2:
        raise AssertionError(f"Both scopes should be granted. Got {granted}")
    if "system/Observation.rs" not in granted:
        raise AssertionError(f'"system/Observation.rs" should be granted. Got {granted}')
    if "system/Patient.read" not in granted and "system/Patient.rs" not in granted:
        raise AssertionError(
            f'"system/Patient.read" or "system/Patient.rs" should be granted. Got {granted}'
        )


async def validates_jku_header(config, api, context):
    response = await _request_with_assertion(config, context, header={"jku": "test-bad-jku"})
    expect_oauth_error(response, "The authorization attempt must fail if a bad jku token header is passed")


async def validates_signature(config, api, context):
    # A fresh key the server cannot know, under the registered key id
    jwk = ECAlgorithm.to_jwk(ec.generate_private_key(ec.SECP384R1()), as_dict=True)
    jwk.update({"alg": "ES384", "kid": config.authentication.private_key.get("kid")})

    response = await _request_with_assertion(config, context, private_key=jwk, algorithm="ES384")
    expect_oauth_error(
        response,
        "The authorization attempt must fail if the token is not signed with the correct private key",
    )


async def authorizes_with_jwks_url(config, api, context):
    jwks_url = config.authentication.jwks_url
    api.prerequisite(
        {
            "assertion": jwks_url,
            "message": "This server is not configured to support authorization using JWKS URL",
        }
    )

    response = await _request_with_assertion(config, context, header={"jku": jwks_url})
    expect_successful_auth(response, "Failed to authorize via JWKS URL")


def _kick_off_tests(export_type, b):
    b.test(
        {
            "name": "Requires authorization header",
            "description": f"The server should require authorization header at the {export_type}-level export endpoint",
        },
        partial(requires_authorization_header, export_type=export_type),
    )
    b.test(
        {
            "name": "Rejects invalid token",
            "description": f"The server should reject invalid tokens at the {export_type}-level export endpoint",
        },
        partial(rejects_invalid_token, export_type=export_type),
    )


def _token_endpoint_tests(b):
    b.before_each(prepare_token_request)

    b.test(
        {
            "name": "Clients can authorize",
            "description": (
                "Does not test any edge cases. Just verifies that the authorization "
                "works with the provided settings."
            ),
        },
        clients_can_authorize,
    )
    b.test(
        {
            "name": 'Requires "application/x-www-form-urlencoded" POSTs',
            "description": (
                "The client requests a new access token via HTTP POST to the token "
                "endpoint URL, using content-type `application/x-www-form-urlencoded`."
            ),
        },
        requires_form_post,
    )

    for param in TOKEN_FORM_PARAMS:
        b.test(
            {
                "name": f"The '{param}' parameter must be present",
                "description": f"The server should reply with 400 Bad Request if the `{param}` parameter is not sent.",
            },
            partial(requires_form_param, param=param),
        )
        b.test(
            {
                "name": f"The '{param}' parameter must be valid",
                "description": f"The server should reply with 400 Bad Request if the `{param}` parameter has invalid value.",
            },
            partial(validates_form_param, param=param),
        )

    b.test(
        {
            "name": "Validates authenticationToken.aud",
            "description": (
                "The `aud` claim of the authentication JWT must be the token URL "
                "this authentication JWT is posted to."
            ),
        },
        validates_audience,
    )
    b.test(
        {
            "name": "Validates authenticationToken.iss",
            "description": "The `iss` claim of the authentication JWT must equal the registered `client_id`.",
        },
        validates_issuer,
    )
    b.test(
        {
            "name": "Only accept registered client IDs",
            "description": "Verify that clients can't use random client id.",
        },
        rejects_unregistered_client,
    )

    b.test(
        {
            "name": "Rejects empty scope",
            "description": "The server should reject token requests asking for an empty scope.",
        },
        partial(
            rejects_scope,
            scope="",
            message='The authorization attempt should fail if an empty ("") scope is requested',
        ),
    )
    b.test(
        {
            "name": "Validates scopes",
            "description": "Only valid system scopes are accepted by the server.",
        },
        partial(
            rejects_scope,
            scope="launch fhirUser",
            message="The authorization attempt must fail if a non-system scope is requested",
        ),
    )
    b.test(
        {
            "name": "Handles V1 scopes correctly",
            "description": (
                "Verifies that scopes like `system/Patient.*` or `system/*.*` are handled correctly.\n"
                "- Servers should avoid granting `.*` action scopes and prefer `.read` instead\n"
                "- Servers should NOT explicitly grant any `.write` scopes"
            ),
        },
        partial(handles_scopes, scopes=V1_SCOPES, forbidden=re.compile(r"\.\*\B|\.write\b|\.[cud]+\b")),
    )
    b.test(
        {
            "name": "Handles V2 scopes correctly",
            "min_version": "2",
            "description": (
                "Verifies that scopes like `system/Patient.cruds` or `system/*.rs` are handled "
                "correctly. Servers should NOT grant any `c`, `u` or `d` actions."
            ),
        },
        partial(handles_scopes, scopes=V2_SCOPES, forbidden=re.compile(r"\.[cud]+\b")),
    )
    b.test(
        {
            "name": "Accepts wildcard resource scopes",
            "description": "Verifies that scopes like `system/*.read` are supported.",
        },
        partial(accepts_scope, scope="system/*.read"),
    )
    b.test(
        {
            "name": "Accepts wildcard resource V2 scopes",
            "min_version": "2",
            "description": "Verifies that scopes like `system/*.rs` are supported.",
        },
        partial(accepts_scope, scope="system/*.rs"),
    )
    b.test(
        {
            "name": "Rejects unknown action scopes",
            "description": "Verifies that scopes like `system/Patient.unknownAction` are rejected.",
        },
        partial(
            rejects_scope,
            scope="system/Patient.unknownAction",
            message=(
                "The authorization attempt must fail if a scope is requesting an unknown "
                "action (other than read, write or *)"
            ),
        ),
    )
    b.test(
        {
            "name": "Rejects unknown action in V2 scopes",
            "min_version": "2",
            "description": "Verifies that scopes like `system/Patient.xyz` are rejected.",
        },
        partial(
            rejects_scope,
            scope="system/Patient.xyz",
            message=(
                "The authorization attempt must fail if a scope is requesting an unknown "
                "action (other than c, r, u, d or s)"
            ),
        ),
    )
    b.test(
        {
            "name": "Rejects unknown resource scopes",
            "description": "Verifies that scopes like `system/UnknownResource.read` are rejected.",
        },
        partial(
            rejects_scope,
            scope="system/UnknownResource.read",
            message="The authorization attempt must fail if requested scopes are pointing to unknown FHIR resources",
        ),
    )
    b.test(
        {
            "name": "Rejects unknown resource in V2 scopes",
            "min_version": "2",
            "description": "Verifies that scopes like `system/UnknownResource.r` are rejected.",
        },
        partial(
            rejects_scope,
            scope="system/UnknownResource.r",
            message="The authorization attempt must fail if requested scopes are pointing to unknown FHIR resources",
        ),
    )
    b.test(
        {
            "name": "Rejects explicit mutation scopes",
            "description": (
                "When `system/Patient.write` is the only scope requested the server "
                "should not grant it, so the whole negotiation fails."
            ),
        },
        partial(
            rejects_scope,
            scope="system/Patient.write",
            message="The authorization attempt must fail for explicit mutation scopes",
        ),
    )
    b.test(
        {
            "name": "Supports mixed v1 and v2 scopes",
            "description": (
                "All scopes of a mixed V1 and V2 request are granted, either as "
                "requested or converted to V2."
            ),
        },
        supports_mixed_scopes,
    )
    b.test(
        {
            "name": "Rejects explicit mutation V2 scopes",
            "min_version": "2",
            "description": (
                "When write-only scopes like `system/Patient.u` are the only ones "
                "requested, the whole negotiation fails."
            ),
        },
        partial(rejects_mutation_scopes, scopes=V2_MUTATION_SCOPES),
    )

    b.test(
        {
            "name": "Validates the jku token header",
            "description": (
                "When present, the `jku` header must match the JWKS URL registered "
                "by the client. Authorizing with `test-bad-jku` must fail."
            ),
        },
        validates_jku_header,
    )
    b.test(
        {
            "name": "Validates the token signature",
            "description": (
                "A request that is valid except that the authentication token is "
                "signed with an unknown private key must fail."
            ),
        },
        validates_signature,
    )
    b.test(
        {
            "name": "Authorization using JWKS URL",
            "description": (
                "The server supports authorization with a `jku` header pointing at "
                "the client's JWKS URL."
            ),
        },
        authorizes_with_jwks_url,
    )


def register(builder):
    def authorization(b):
        for export_type in EXPORT_TYPES:
            b.suite(
                f"Kick-off request at the {export_type}-level export endpoint",
                partial(_kick_off_tests, export_type),
            )
        b.suite("Token endpoint", _token_endpoint_tests)

    builder.suite("Authorization", authorization)
