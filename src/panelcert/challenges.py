from . import audit
from .errors import ChallengeError
from .utils import write_atomic
from pathlib import Path
import click
import dataclasses
import re
import requests
import time


WELL_KNOWN = ('.well-known', 'acme-challenge')
TOKEN_RE = re.compile(r'^[A-Za-z0-9_-]+$')


@dataclasses.dataclass(frozen=True)
class ChallengeRecord:
    token: str
    proof: str
    domain: str


@dataclasses.dataclass(frozen=True)
class ChallengeHandle:
    record: ChallengeRecord
    location: Path
    url: str


class Http01WebrootResponder:
    """Publishes http-01 key authorizations into a served web root.

    The web server in front of ``web_root`` must serve
    ``/.well-known/acme-challenge/<token>`` without authentication.  Other
    challenge types are separate responders with the same three members:
    ``challenge_type``, ``publish`` and ``retract``.
    """

    challenge_type = 'http-01'

    def __init__(self, web_root, verify=False, verify_timeout=30.0,
                 verify_interval=1.0, session=None, sleep=time.sleep):
        self.web_root = Path(web_root)
        self.verify = verify
        self.verify_timeout = verify_timeout
        self.verify_interval = verify_interval
        self.session = session
        self.sleep = sleep

    def handle(self, record):
        if not TOKEN_RE.match(record.token):
            raise ChallengeError(
                "Refusing unsafe challenge token %r" % record.token,
                domain=record.domain, stage='challenge')
        location = self.web_root.joinpath(*WELL_KNOWN, record.token)
        url = "http://%s/%s/%s" % (record.domain, '/'.join(WELL_KNOWN), record.token)
        return ChallengeHandle(record=record, location=location, url=url)

    def publish(self, record):
        handle = self.handle(record)
        click.echo("Writing challenge file '%s'." % handle.location)
        try:
            write_atomic(handle.location, record.proof.encode('ascii'))
        except OSError as e:
            raise ChallengeError(
                "Couldn't write challenge file '%s'" % handle.location,
                domain=record.domain, stage='challenge', cause=e)
        audit.event(
            'challenge_published', domain=record.domain, token=record.token,
            location=str(handle.location), url=handle.url)
        if self.verify:
            self.self_check(handle)
        return handle

    def self_check(self, handle):
        """Waits until the published proof is served at its public URL."""
        session = self.session or requests.Session()
        started = time.monotonic()
        last = None
        while True:
            try:
                res = session.get(handle.url, timeout=5)
            except requests.RequestException as e:
                last = repr(e)
            else:
                if res.status_code == 200 and res.text.strip() == handle.record.proof:
                    click.echo(click.style(
                        "Challenge reachable at %s." % handle.url, fg='green'))
                    return
                last = "HTTP %s" % res.status_code
            if time.monotonic() - started + self.verify_interval > self.verify_timeout:
                self.retract(handle)
                raise ChallengeError(
                    "Challenge file isn't served at %s (%s)" % (handle.url, last),
                    domain=handle.record.domain, stage='challenge')
            self.sleep(self.verify_interval)

    def retract(self, handle):
        try:
            handle.location.unlink()
        except FileNotFoundError:
            return
        except OSError as e:
            click.echo(click.style(
                "Warning: Could not clean up challenge file '%s': %s" % (
                    handle.location, e),
                fg='yellow'))
            audit.warning(
                'challenge_retract_failed', domain=handle.record.domain,
                token=handle.record.token, reason=str(e))
            return
        audit.event(
            'challenge_retracted', domain=handle.record.domain,
            token=handle.record.token)
