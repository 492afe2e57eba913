"""
Download endpoint checks.
"""

import base64
import binascii
import json
import re

from ..client.bulk_data_client import BulkDataClient
from ..client.settings import AuthType
from ..core.exceptions import AuthorizationError
from .expectations import (
    expect_ndjson_response,
    expect_status_code,
    expect_successful_download,
    expect_successful_kick_off,
)


def _cancel_on_exit(api, client):
    api.after(lambda **_: client.cancel_if_started(client.kick_off_response))


def _manifest(client):
    response = client.status_response
    return response.body if response is not None and isinstance(response.body, dict) else {}


async def requires_access_token(config, api, context):
    client = BulkDataClient(config, api)
    _cancel_on_exit(api, client)
    await client.get_export_response()

    api.prerequisite(
        {
            "assertion": _manifest(client).get("requiresAccessToken") is True,
            "message": "The requiresAccessToken field in the complete status body is not set to true",
        }
    )

    result = await client.download_file_at(0, skip_auth=True)
    if result.status_code is None or result.status_code < 400:
        raise AssertionError(
            f"Downloading without an access token should fail. Got {result.status_code}"
        )


async def generates_valid_file(config, api, context):
    client = BulkDataClient(config, api)
    _cancel_on_exit(api, client)
    result = await client.download_file_at(0)

    expect_status_code(result.response, 200)
    expect_ndjson_response(result.response)

    if result.body.endswith("\n"):
        api.console.warn("The NDJSON file ends with a new line. This could confuse some parsers.")


async def allows_public_download(config, api, context):
    client = BulkDataClient(config, api)
    _cancel_on_exit(api, client)
    await client.get_export_response()

    api.prerequisite(
        {
            "assertion": _manifest(client).get("requiresAccessToken") is not True,
            "message": "The requiresAccessToken field in the complete status body is set to true",
        }
    )

    result = await client.download_file_at(0, skip_auth=True)
    if result.status_code is None or result.status_code >= 400:
        raise AssertionError(
            f"Downloading a file without authorization should succeed. Got {result.status_code}"
        )


async def checks_download_scopes(config, api, context):
    api.prerequisite(
        {
            "assertion": config.authentication.type is AuthType.BACKEND_SERVICES,
            "message": "This test is only applicable for servers using SMART Backend Services authentication",
        }
    )

    client = BulkDataClient(config, api)
    _cancel_on_exit(api, client)
    kick_off = await client.kick_off(params={"_type": config.fastest_resource})
    expect_successful_kick_off(kick_off.response, "Export failed")
    await client.get_export_response()

    manifest = _manifest(client)
    api.prerequisite(
        {
            "assertion": manifest.get("requiresAccessToken") is True,
            "message": "The requiresAccessToken field in the complete status body is not set to true",
        }
    )

    # A token for another resource type, obtained after the export is done
    try:
        token = await client.authorize(
            scope="system/Observation.read",
            request_label="Authorization Request 2",
            response_label="Authorization Response 2",
        )
    except AuthorizationError as e:
        api.set_not_supported(
            'This test is not supported because re-authorizing with "system/Observation.read" '
            f"did not succeed. {e}"
        )
        return

    result = await client.download_file(
        manifest["output"][0]["url"], headers={"authorization": f"Bearer {token}"}
    )
    if result.status_code is None or result.status_code < 400:
        raise AssertionError(
            f"Download should fail if the client does not have proper scopes. Got {result.status_code}"
        )


def _check_attachment(attachment, location):
    if not attachment.get("contentType"):
        raise AssertionError(f"The contentType property of {location} must be specified")

    data, url = attachment.get("data"), attachment.get("url")
    if data and url:
        raise AssertionError(f"Either {location}.data or {location}.url should be specified, but not both")
    if not data and not url:
        raise AssertionError(f"Either {location}.data or {location}.url should be specified")


async def supports_document_attachments(config, api, context):
    client = BulkDataClient(config, api)
    _cancel_on_exit(api, client)

    # DocumentReference export is optional
    kick_off = await client.kick_off(params={"_type": ["DocumentReference"]})
    if kick_off.status_code != 202 or not kick_off.response.content_location:
        api.set_not_supported(
            "Unable to export DocumentReference resources. Perhaps the server does not support that."
        )
        return

    status = await client.wait_for_export()
    expect_status_code(status.response, 200, "Export was not successful")

    output = _manifest(client).get("output")
    if not isinstance(output, list):
        raise AssertionError("The output property of the status response must be an array")
    if not output:
        api.set_not_supported("No DocumentReference resources found on this server")
        return

    skip_auth = not _manifest(client).get("requiresAccessToken")

    # One inline and one linked attachment are enough
    inline_checked = url_checked = False
    for entry in output:
        download = await client.download_file(entry["url"], skip_auth=skip_auth)
        expect_successful_download(download.response, f"Failed to download file from {entry['url']}")

        for number, line in enumerate(download.body.splitlines(), start=1):
            if not line.strip():
                continue
            try:
                document = json.loads(line)
            except ValueError as e:
                raise AssertionError(f"Failed to parse DocumentReference line {number} from NDJSON: {e}")

            for i, item in enumerate(document.get("content") or []):
                location = f"documentReference.content[{i}].attachment"
                attachment = item.get("attachment") or {}
                _check_attachment(attachment, location)

                if not inline_checked and attachment.get("data"):
                    inline_checked = True
                    try:
                        base64.b64decode(attachment["data"], validate=True)
                    except (binascii.Error, ValueError):
                        raise AssertionError(f"Found invalid base64Binary data at {location}.data")

                if not url_checked and attachment.get("url"):
                    url_checked = True
                    url = str(attachment["url"])
                    if not re.match(r"^https?://.+", url):
                        raise AssertionError(f'The attachment url property must be an absolute URL. Found "{url}".')

                    if not skip_auth:
                        anonymous = await client.request(url, skip_auth=True)
                        if anonymous.status_code not in (400, 401, 403):
                            raise AssertionError(
                                f"The attachment at {url} should not be downloadable without "
                                f"authentication. Got {anonymous.status_code}"
                            )

                    linked = await client.request(url)
                    expect_status_code(linked.response, [200, 304], f"The file at {url} cannot be downloaded")


async def deleted_files_return_404(config, api, context):
    client = BulkDataClient(config, api)
    _cancel_on_exit(api, client)
    result = await client.download_file_at(0)
    expect_successful_download(result.response, "Download failed")

    await client.cancel(client.kick_off_response)

    again = await client.download_file(
        _manifest(client)["output"][0]["url"],
        skip_auth=_manifest(client).get("requiresAccessToken") is False,
    )
    expect_status_code(
        again.response,
        404,
        "Files remain accessible after the export is deleted. Requesting them should return a 404 status code",
    )


def register(builder):
    def download_endpoint(b):
        b.test(
            {
                "id": "Download-01",
                "name": "Requires valid access token if the requiresAccessToken field in the status body is true",
                "description": (
                    "If `requiresAccessToken` is true in the complete status body, "
                    "the download request must include a valid access token."
                ),
            },
            requires_access_token,
        )
        b.test(
            {
                "id": "Download-02",
                "name": "Generates valid file response",
                "description": (
                    "The server returns 200 with `application/fhir+ndjson` and a body "
                    "of one JSON resource per line."
                ),
            },
            generates_valid_file,
        )
        b.test(
            {
                "id": "Download-03",
                "name": "Does not require access token if the requiresAccessToken field in the status body is not true",
                "description": (
                    "Files can be downloaded without authorization if `requiresAccessToken` "
                    "in the complete status body is not set to true."
                ),
            },
            allows_public_download,
        )
        b.test(
            {
                "id": "Download-04",
                "name": "Rejects a download if the client scopes do not cover that resource type",
                "description": (
                    "After the export completes the client re-authorizes with "
                    "`system/Observation.read` and downloads an exported file with "
                    "that token. The download must be rejected."
                ),
            },
            checks_download_scopes,
        )
        b.test(
            {
                "id": "Download-05",
                "name": "Supports binary file attachments in DocumentReference resources",
                "description": (
                    "Exported `DocumentReference` attachments carry a `contentType` and "
                    "either base64 `data` or an absolute `url`. Linked attachments are "
                    "downloadable, and protected when `requiresAccessToken` is true."
                ),
            },
            supports_document_attachments,
        )
        b.test(
            {
                "id": "Download-06",
                "name": "Requesting deleted files returns 404 responses",
                "description": (
                    "After a completed export is deleted with **DELETE** on its status "
                    "location, requests for its files SHALL return 404."
                ),
            },
            deleted_files_return_404,
        )

    builder.suite("Download Endpoint", download_endpoint)
