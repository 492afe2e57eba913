"""
Status endpoint checks.
"""

import json
from datetime import datetime, timedelta, timezone

from ..client.bulk_data_client import BulkDataClient
from ..tree.console import LogType
from .expectations import (
    REGEXP_INSTANT,
    expect_json_response,
    expect_operation_outcome,
    expect_status_code,
    expect_successful_kick_off,
)


async def responds_202_while_pending(config, api, context):
    client = BulkDataClient(config, api)
    result = await client.kick_off(params={"_type": config.fastest_resource})
    api.after(lambda **_: client.cancel_if_started(result.response))

    status = await client.status()
    expect_status_code(status.response, 202, "The status endpoint must return 202 for an active export")


def _check_file_items(items, name, resource_type=None):
    if not isinstance(items, list):
        raise AssertionError(f"The '{name}' property must be an array")

    for item in items:
        if not isinstance(item, dict) or "type" not in item:
            raise AssertionError(f"Every {name} item must have a 'type' property")
        if resource_type and item["type"] != resource_type:
            raise AssertionError(
                f"Every {name} item's 'type' must equal the exported resource type {resource_type}"
            )
        if not isinstance(item.get("url"), str):
            raise AssertionError(f"Every {name} item must have a string 'url' property")
        if "count" in item and not isinstance(item["count"], (int, float)):
            raise AssertionError(f"If set, {name} item count must be a number")


async def generates_valid_manifest(config, api, context):
    resource_type = config.fastest_resource
    client = BulkDataClient(config, api)
    kick_off = await client.kick_off(params={"_type": resource_type})
    api.after(lambda **_: client.cancel_if_started(kick_off.response))

    result = await client.wait_for_export()
    expect_status_code(result.response, 200, "The status endpoint must return 200 for completed exports")
    expect_json_response(result.response)

    manifest = result.body
    if not isinstance(manifest, dict):
        raise AssertionError("The status response body must be a JSON object")

    if not REGEXP_INSTANT.fullmatch(str(manifest.get("transactionTime", ""))):
        raise AssertionError("transactionTime must be a FHIR instant")

    if manifest.get("request") != client.kick_off_request.url:
        raise AssertionError("The 'request' property must contain the kick-off URL")

    if not isinstance(manifest.get("requiresAccessToken"), bool):
        raise AssertionError("The 'requiresAccessToken' property must have a boolean value")

    _check_file_items(manifest.get("output"), "output", resource_type)
    _check_file_items(manifest.get("error"), "error")


async def exports_can_be_canceled(config, api, context):
    client = BulkDataClient(config, api)
    kick_off = await client.kick_off(params={"_type": config.fastest_resource})
    api.after(lambda **_: client.cancel_if_started(kick_off.response))
    expect_successful_kick_off(kick_off.response)

    first = await client.cancel(kick_off.response)
    if first.status_code is None or not 200 <= first.status_code < 300:
        api.set_not_supported("DELETE requests to the status endpoint are not supported by this server")
        return

    expect_status_code(
        first.response, 202, "Servers that support export job canceling should reply with 202 status code"
    )

    second = await client.request(
        kick_off.response.content_location,
        method="DELETE",
        request_label="Second Cancellation Request",
        response_label="Second Cancellation Response",
    )
    message = (
        "Following the delete request, when subsequent requests are made to the "
        "polling location, the server SHALL return a 404 error and an associated "
        "FHIR OperationOutcome in JSON format"
    )
    expect_status_code(second.response, 404, message)
    expect_operation_outcome(second.response, message)


# Optional kick-off parameters, tried in order until one is rejected
OPTIONAL_PARAMS = {
    "_typeFilter": "Patient?status=active",
    "includeAssociatedData": "LatestProvenanceResources",
    "_elements": "id",
    "patient": ["test-patient-id"],
    "_type": ["Patient"],
}


def _lenient_kick_off_options(param, since):
    patient = param == "patient"
    return {
        "method": "POST" if patient else "GET",
        "type": "patient" if patient else None,
        "params": {param: OPTIONAL_PARAMS[param], "_since": since},
    }


async def includes_lenient_errors(config, api, context):
    client = BulkDataClient(config, api)
    api.after(lambda **_: client.cancel_if_started(client.kick_off_response))

    # A recent _since keeps the export small
    since = (datetime.now(timezone.utc) - timedelta(days=1)).strftime("%Y-%m-%dT%H:%M:%SZ")

    unsupported = None
    for param in OPTIONAL_PARAMS:
        result = await client.kick_off(**_lenient_kick_off_options(param, since))
        await client.cancel_if_started(result.response)
        if result.status_code is not None and 400 <= result.status_code < 500:
            unsupported = param
            break

    if unsupported is None:
        api.console.md(
            "Every optional parameter was accepted, so lenient handling could not be checked.",
            LogType.INFO,
            "NOTE",
        )
        return

    kick_off = await client.kick_off(
        headers={"prefer": "respond-async,handling=lenient"},
        **_lenient_kick_off_options(unsupported, since),
    )
    expect_successful_kick_off(kick_off.response, "Kick-off failed")

    await client.wait_for_export()
    await client.cancel(kick_off.response)

    manifest = client.status_response.body if isinstance(client.status_response.body, dict) else {}
    outcomes = [
        e for e in manifest.get("error") or [] if isinstance(e, dict) and e.get("resourceType") == "OperationOutcome"
    ]
    if not outcomes:
        raise AssertionError("No OperationOutcome errors found in the errors array")
    if unsupported not in json.dumps(outcomes):
        raise AssertionError(
            f'"{unsupported}" should be mentioned in at least one of the OperationOutcome errors'
        )


def register(builder):
    def status_endpoint(b):
        b.test(
            {
                "id": "Status-01",
                "name": "Responds with 202 for active transaction IDs",
                "description": "The status endpoint should return **202** until the export is completed.",
            },
            responds_202_while_pending,
        )
        b.test(
            {
                "id": "Status-02",
                "name": "Replies properly in case of error",
                "description": "The status endpoint should reply with 5XX and an OperationOutcome on failure.",
            }
        )
        b.test(
            {
                "id": "Status-03",
                "name": "Generates valid status response",
                "description": (
                    "The completed status response must be JSON with `transactionTime`, "
                    "`request`, `requiresAccessToken`, `output[]` and `error[]`."
                ),
            },
            generates_valid_manifest,
        )
        b.test(
            {
                "id": "Status-04",
                "name": "Exports can be canceled",
                "description": (
                    "A client MAY send a **DELETE** request to the Content-Location URL to "
                    "cancel an export. Later requests to that location SHALL return 404 "
                    "with a FHIR OperationOutcome in JSON format."
                ),
            },
            exports_can_be_canceled,
        )
        b.test(
            {
                "id": "Status-05",
                "name": "Includes lenient errors in the payload errors array",
                "min_version": "1.2",
                "description": (
                    "If the request contained unsupported parameters along with a "
                    "`Prefer: handling=lenient` header and the server processed it, the "
                    "server SHOULD include an OperationOutcome for each of these parameters."
                ),
            },
            includes_lenient_errors,
        )

    builder.suite("Status Endpoint", status_endpoint)
