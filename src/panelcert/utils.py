import click
import datetime
import os
import sys
import tempfile
import time


def fatal(msg, code=3):
    click.echo(click.style(msg, fg='red'), err=True)
    sys.exit(code)


def problem_document(response):
    """Returns the JSON problem document of a failed response.

    Falls back to a synthetic document if the body isn't JSON, so callers
    always get ``type``, ``detail`` and ``status``.
    """
    try:
        data = response.json()
    except ValueError:
        data = None
    if not isinstance(data, dict):
        data = dict(detail=response.text[:500])
    data.setdefault('status', response.status_code)
    data.setdefault('detail', "%s %s" % (response.status_code, response.reason))
    return data


def utcnow():
    return datetime.datetime.now(datetime.timezone.utc)


def ensure_not_empty(fn):
    if fn.exists():
        with fn.open('rb') as f:
            l = len(f.read().strip())
        if l:
            return True
        click.echo(click.style(
            "Removing empty file '%s'." % fn, fg='yellow'))
        fn.unlink()
    return False


def write_atomic(fn, data, mode=0o644):
    """Writes ``data`` to ``fn`` via a temporary file and a rename.

    A crash leaves either the old content or the new one, never a partial
    file under the final name.
    """
    fn.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(
        dir=str(fn.parent), prefix='.%s.' % fn.name, suffix='.tmp')
    try:
        with os.fdopen(fd, 'wb') as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp, mode)
        os.replace(tmp, str(fn))
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise
    return fn


class Deadline:
    """A point in monotonic time after which waiting must stop."""

    def __init__(self, seconds, clock=time.monotonic):
        self.clock = clock
        self.expires = clock() + seconds

    def remaining(self):
        return max(0.0, self.expires - self.clock())

    @property
    def expired(self):
        return self.remaining() <= 0
