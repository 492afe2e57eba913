"""
Server metadata checks: the CapabilityStatement and the SMART well-known
configuration document.
"""

from functools import partial

from ..client.bulk_data_client import BulkDataClient
from ..client.settings import AuthType

BULK_DATA_CAPABILITY_STATEMENT = "http://hl7.org/fhir/uv/bulkdata/CapabilityStatement/bulk-data"
OAUTH_URIS_EXTENSION = "http://fhir-registry.smarthealthit.org/StructureDefinition/oauth-uris"


async def instantiates_bulk_data(config, api, context):
    client = BulkDataClient(config, api)
    statement = await client.get_capability_statement()

    if BULK_DATA_CAPABILITY_STATEMENT not in (statement.get("instantiates") or []):
        raise AssertionError(
            f"{BULK_DATA_CAPABILITY_STATEMENT} was not found in CapabilityStatement.instantiates"
        )


async def declares_token_endpoint(config, api, context):
    api.prerequisite(
        {
            "assertion": config.authentication.type is not AuthType.NONE,
            "message": "This server does not require authorization",
        }
    )

    client = BulkDataClient(config, api)
    statement = await client.get_capability_statement()

    try:
        security = statement["rest"][0]["security"]
        extensions = next(
            e["extension"] for e in security["extension"] if e.get("url") == OAUTH_URIS_EXTENSION
        )
    except (KeyError, IndexError, TypeError, StopIteration):
        raise AssertionError(
            f'Unable to find security extensions at "{config.base_url.rstrip("/")}/metadata"'
        )

    token = next((e for e in extensions if e.get("url") == "token"), None)
    if not token or not token.get("valueUri"):
        raise AssertionError('Unable to find the "token" endpoint in the CapabilityStatement')


async def defines_export_operation(config, api, context):
    client = BulkDataClient(config, api)
    statement = await client.get_capability_statement()

    try:
        operations = statement["rest"][0]["operation"]
    except (KeyError, IndexError, TypeError):
        operations = []

    if not any(isinstance(o, dict) and o.get("name") == "export" for o in operations or []):
        raise AssertionError(
            f'Unable to find "export" operation at "{config.base_url.rstrip("/")}/metadata"'
        )


async def defines_resource_operation(config, api, context, resource_type, operation):
    client = BulkDataClient(config, api)
    statement = await client.get_capability_statement()

    try:
        resource = next(
            r for r in statement["rest"][0]["resource"] if str(r.get("type", "")).lower() == resource_type
        )
        found = any(o.get("name") == operation for o in resource["operation"])
    except (KeyError, IndexError, TypeError, StopIteration, AttributeError):
        found = False

    if not found:
        raise AssertionError(
            f'Unable to find "{operation}" operation at "{config.base_url.rstrip("/")}/metadata"'
        )


async def declares_well_known_token_endpoint(config, api, context):
    client = BulkDataClient(config, api)
    result = await client.request(
        ".well-known/smart-configuration",
        skip_auth=True,
        request_label=".well-known/smart-configuration request",
        response_label=".well-known/smart-configuration response",
    )

    # The document is optional
    if result.status_code == 404:
        api.console.warn(
            f'No WellKnown JSON found at "{config.base_url.rstrip("/")}/.well-known/smart-configuration"'
        )
        return

    if not isinstance(result.body, dict) or "token_endpoint" not in result.body:
        raise AssertionError('The WellKnown JSON did not include a "token_endpoint" declaration')


def register(builder):
    def capability_statement(b):
        b.test(
            {
                "id": "CapabilityStatement-01",
                "name": "The CapabilityStatement instantiates the bulk-data CapabilityStatement",
                "description": (
                    "To declare conformance with this IG, a server should include "
                    f"`{BULK_DATA_CAPABILITY_STATEMENT}` in its own "
                    "`CapabilityStatement.instantiates`."
                ),
            },
            instantiates_bulk_data,
        )
        b.test(
            {
                "id": "CapabilityStatement-02",
                "name": "The CapabilityStatement declares the token endpoint",
                "description": (
                    "If a server requires SMART on FHIR authorization, its metadata "
                    "must support automated discovery of OAuth2 endpoints through the "
                    "`oauth-uris` extension on `CapabilityStatement.rest.security`."
                ),
            },
            declares_token_endpoint,
        )
        b.test(
            {
                "id": "CapabilityStatement-03",
                "name": 'Check if "export" operation is defined in the CapabilityStatement',
                "description": "The first `CapabilityStatement.rest` entry lists an operation named `export`.",
            },
            defines_export_operation,
        )
        b.test(
            {
                "id": "CapabilityStatement-04",
                "name": 'Check if "patient-export" operation is defined in the CapabilityStatement',
                "description": "The `Patient` resource of `CapabilityStatement.rest` lists a `patient-export` operation.",
            },
            partial(defines_resource_operation, resource_type="patient", operation="patient-export"),
        )
        b.test(
            {
                "id": "CapabilityStatement-05",
                "name": 'Check if "group-export" operation is defined in the CapabilityStatement',
                "description": "The `Group` resource of `CapabilityStatement.rest` lists a `group-export` operation.",
            },
            partial(defines_resource_operation, resource_type="group", operation="group-export"),
        )

    def well_known(b):
        b.test(
            {
                "id": "WellKnown-01",
                "name": "Includes token_endpoint definition",
                "description": (
                    "If the server provides a `/.well-known/smart-configuration` document, "
                    "it declares a `token_endpoint` property."
                ),
            },
            declares_well_known_token_endpoint,
        )

    def metadata(b):
        b.suite("CapabilityStatement", capability_statement)
        b.suite("Well Known SMART Configuration", well_known)

    builder.suite("Metadata", metadata)
