"""
Kick-off endpoint checks, repeated for every export level.
"""

from functools import partial

from ..client.bulk_data_client import EXPORT_TYPES, BulkDataClient
from .expectations import expect_failed_kick_off, expect_status_code, expect_successful_kick_off

SUPPORTED_OUTPUT_FORMATS = ["application/fhir+ndjson", "application/ndjson", "ndjson"]
UNSUPPORTED_OUTPUT_FORMATS = ["application/xml", "text/html", "x-custom"]


async def _kick_off_and_cancel(config, api, **options):
    """Kick off an export, cancel it if it started, and return the kick-off response."""
    client = BulkDataClient(config, api)
    result = await client.kick_off(**options)
    await client.cancel_if_started(result.response)
    return result.response


async def accepts_kick_off(config, api, context, export_type, method="GET"):
    response = await _kick_off_and_cancel(
        config,
        api,
        type=export_type,
        method=method,
        params={"_type": config.fastest_resource},
    )
    expect_successful_kick_off(response)


async def requires_header(config, api, context, export_type, header, method="GET"):
    response = await _kick_off_and_cancel(
        config, api, type=export_type, method=method, headers={header: None}
    )
    expect_failed_kick_off(response, f"The {header} header is not required")


async def accepts_output_format(config, api, context, export_type, output_format):
    response = await _kick_off_and_cancel(
        config,
        api,
        type=export_type,
        params={"_outputFormat": output_format, "_type": config.fastest_resource},
    )
    expect_successful_kick_off(response, f"_outputFormat={output_format} was rejected")


async def rejects_output_format(config, api, context, export_type, output_format):
    response = await _kick_off_and_cancel(
        config, api, type=export_type, params={"_outputFormat": output_format}
    )
    expect_failed_kick_off(response, f"_outputFormat={output_format} was accepted")


async def can_be_canceled(config, api, context, export_type):
    client = BulkDataClient(config, api)
    result = await client.kick_off(type=export_type, params={"_type": config.fastest_resource})
    expect_successful_kick_off(result.response)

    cancellation = await client.cancel(result.response)
    expect_status_code(cancellation.response, 202, "Failed to cancel the export")


def _level_tests(export_type, b):
    b.test(
        {
            "name": "Accepts GET requests",
            "description": "An otherwise valid GET kick-off request must be accepted with 202 and a Content-Location.",
        },
        partial(accepts_kick_off, export_type=export_type),
    )
    b.test(
        {
            "name": "Accepts POST requests",
            "min_version": "2",
            "description": "A POST kick-off request with a FHIR Parameters body must be accepted.",
        },
        partial(accepts_kick_off, export_type=export_type, method="POST"),
    )
    b.test(
        {
            "name": "Requires Accept header",
            "description": "A kick-off request without `accept: application/fhir+json` must be rejected.",
        },
        partial(requires_header, export_type=export_type, header="accept"),
    )
    b.test(
        {
            "name": "Requires the Prefer header to contain respond-async",
            "description": "A kick-off request without `prefer: respond-async` must be rejected.",
        },
        partial(requires_header, export_type=export_type, header="prefer"),
    )
    for output_format in SUPPORTED_OUTPUT_FORMATS:
        b.test(
            f"Accepts _outputFormat={output_format}",
            partial(accepts_output_format, export_type=export_type, output_format=output_format),
        )
    for output_format in UNSUPPORTED_OUTPUT_FORMATS:
        b.test(
            f'Rejects unsupported format "_outputFormat={output_format}"',
            partial(rejects_output_format, export_type=export_type, output_format=output_format),
        )
    b.test(
        {
            "name": "Can be canceled",
            "description": "A DELETE to the Content-Location of a started export must return 202.",
        },
        partial(can_be_canceled, export_type=export_type),
    )


def register(builder):
    def levels(b):
        for export_type in EXPORT_TYPES:
            b.suite(f"Making a {export_type}-level export", partial(_level_tests, export_type))

    builder.suite("Kick-off Endpoint", levels)
