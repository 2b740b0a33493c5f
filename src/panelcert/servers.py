from . import audit
from .errors import PanelcertError, RunInProgress
from .orchestrator import FAILED, MANUAL
from .utils import fatal
from urllib.parse import parse_qs, urlsplit
import click
import hmac
import http.server
import json
import threading
import time


def status_code(outcome):
    if outcome.status == MANUAL:
        return 202
    if outcome.status == FAILED:
        return 500
    return 200


class TriggerRequestHandler(http.server.BaseHTTPRequestHandler):
    server_version = 'panelcert'

    def write_response(self, code, response):
        body = json.dumps(response, sort_keys=True).encode('utf-8')
        self.send_response(code)
        self.send_header('Content-Type', 'application/json')
        self.send_header('Content-Length', str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def authorized(self):
        header = self.headers.get('Authorization', '')
        scheme, _, token = header.partition(' ')
        if scheme.lower() != 'bearer' or not token:
            return False
        expected = self.server.orchestrator.config.trigger_token
        if not expected:
            return False
        return hmac.compare_digest(token.strip().encode('utf-8'), expected.encode('utf-8'))

    def do_GET(self):
        url = urlsplit(self.path)
        if url.path != '/health':
            self.write_response(404, dict(error='not found'))
            return
        status = self.server.orchestrator.status()
        status['status'] = 'ok'
        self.write_response(200, status)

    def do_POST(self):
        url = urlsplit(self.path)
        if url.path != '/certificate/renew':
            self.write_response(404, dict(error='not found'))
            return
        if not self.authorized():
            audit.warning('trigger_unauthorized', client=self.client_address[0])
            self.write_response(401, dict(error='unauthorized'))
            return
        force = parse_qs(url.query).get('force', ['0'])[-1] in ('1', 'true', 'yes')
        audit.event('trigger_received', client=self.client_address[0], force=force)
        try:
            outcome = self.server.orchestrator.run(force=force)
        except RunInProgress as e:
            self.write_response(409, dict(status='in-progress', error=e.context()))
            return
        except PanelcertError as e:
            self.write_response(500, dict(status=FAILED, error=e.context()))
            return
        except Exception as e:
            self.write_response(500, dict(
                status=FAILED,
                error=dict(error=type(e).__name__, message=str(e))))
            return
        self.write_response(status_code(outcome), outcome.to_dict())

    def log_request(self, code='-', size='-'):
        return


class TriggerServer(http.server.ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, address, orchestrator):
        super().__init__(address, TriggerRequestHandler)
        self.orchestrator = orchestrator


def start_server(orchestrator, host='127.0.0.1', port=8080):
    """Serves the trigger endpoint from a daemon thread."""
    address = (host, port)
    try:
        server = TriggerServer(address, orchestrator)
    except OSError as e:
        fatal("Failed to start HTTP server on %s:%s: %s" % (host, port, e))
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    click.echo("Starting http server on %s:%s" % server.server_address[:2])
    thread.start()
    time.sleep(0.1)
    if not thread.is_alive():
        fatal("Failed to start HTTP server on port %s." % port)
    return server, thread
