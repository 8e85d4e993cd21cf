"""Relay GET requests to the URL in the path, adding a permissive CORS header.

    GET /https://example.com/data.json  ->  GET https://example.com/data.json
"""
import argparse
import logging
import sys

import requests
import urllib3
from flask import Flask, request, Response
from werkzeug.exceptions import MethodNotAllowed
from werkzeug.routing import PathConverter
from werkzeug.serving import make_server

logger = logging.getLogger(__name__)

# SETTINGS
DEFAULT_PORT = 8080
CHUNK_SIZE = 64 * 1024
DISCARD_LIMIT = 256 * 1024

METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "TRACE", "CONNECT"]
ONLY_GET = "Only 'GET' requests are permitted."

# Hop-by-hop, the WSGI server frames the downstream connection itself
excluded_headers = [
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
]


class EverythingConverter(PathConverter):
    # Spans "/" and matches a leading one, for targets like "/https://host/a/b"
    regex = ".*"
    part_isolating = False


class RelayResponse(Response):
    # Content-Type comes from upstream or not at all
    default_mimetype = None


app = Flask(__name__)
app.url_map.converters["everything"] = EverythingConverter


def plain_text(message, status):
    return Response(message, status, mimetype="text/plain")


def target_url(req):
    """The raw request target minus one leading "/", not percent-decoded."""
    raw = req.environ.get("REQUEST_URI") or req.environ.get("RAW_URI")
    if raw is None:
        raw = req.full_path if req.query_string else req.path
    return raw[1:] if raw.startswith("/") else raw


def discard_body():
    # Bounded; whatever is left unread is the server's to drop
    left = DISCARD_LIMIT
    while left > 0:
        chunk = request.stream.read(min(CHUNK_SIZE, left))
        if not chunk:
            break
        left -= len(chunk)


def relay_body(upstream, url):
    try:
        for chunk in upstream.raw.stream(CHUNK_SIZE, decode_content=False):
            yield chunk
    except GeneratorExit:
        logger.warning("Client went away while copying response body from %s", url)
        raise
    except (urllib3.exceptions.HTTPError, OSError) as e:
        logger.error("Error copying response body from %s: %s", url, e)


@app.errorhandler(MethodNotAllowed)
def method_not_allowed(e):
    return plain_text(ONLY_GET, 405)


@app.route("/", defaults={"path": ""}, methods=METHODS, provide_automatic_options=False)
@app.route("/<everything:path>", methods=METHODS, provide_automatic_options=False, merge_slashes=False)
def proxy(path):
    discard_body()

    if request.method != "GET":
        return plain_text(ONLY_GET, 405)

    url = target_url(request)

    try:
        upstream = requests.get(url, stream=True)
    except (requests.RequestException, ValueError) as e:
        logger.warning("Error fetching %s: %s", url, e)
        return plain_text(str(e), 500)

    headers = [
        (name, value)
        for name, value in upstream.raw.headers.items()
        if name.lower() not in excluded_headers
    ]
    headers.append(("Access-Control-Allow-Origin", "*"))  # the whole point

    response = RelayResponse(relay_body(upstream, url), upstream.status_code, headers)
    response.call_on_close(upstream.close)
    return response


def main(argv=None):
    parser = argparse.ArgumentParser(description="CORS relay for GET requests.")
    parser.add_argument("-port", "--port", type=int, default=DEFAULT_PORT, help="The port to listen on")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        server = make_server("0.0.0.0", args.port, app, threaded=True)
        logger.info("Listening on 0.0.0.0:%d", args.port)
        server.serve_forever()
    except OSError as e:
        logger.critical("Error while serving: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
