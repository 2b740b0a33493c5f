from . import audit
from .acme import ACME
from .acmesession import get_session
from .certs import gencsr, issuer, load_bundle, save_bundle, verify_domains
from .challenges import Http01WebrootResponder
from .errors import AcmeError, PanelcertError, RunInProgress, StorageError
from .installer import ApiToken, CPanelInstaller, ManualInstaller, SessionLogin
from .installer import install_with_fallback
from .keystore import ACCOUNT, KeyStore
from .renewal import needs_renewal
from .utils import utcnow, write_atomic
from functools import partial
from pathlib import Path
import click
import dataclasses
import fcntl
import json
import os
import threading


SKIPPED = 'skipped'
INSTALLED = 'installed'
MANUAL = 'manual'
FAILED = 'failed'
DRY_RUN = 'dry-run'
PENDING_FILE = 'install.pending'


@dataclasses.dataclass(frozen=True)
class RunOutcome:
    timestamp: str
    domain: str
    status: str
    renewed: bool = False
    installed: bool = False
    reason: str = None
    stage: str = None
    error: dict = None
    manual_followup: dict = None

    @property
    def ok(self):
        return self.status != FAILED

    def to_dict(self):
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data):
        names = set(x.name for x in dataclasses.fields(cls))
        return cls(**{k: v for k, v in data.items() if k in names})


class OutcomeLog:
    """Append-only JSON lines history of run outcomes."""

    def __init__(self, path):
        self.path = Path(path)
        self._last = None

    def append(self, outcome):
        line = json.dumps(outcome.to_dict(), sort_keys=True)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open('a') as f:
                f.write(line + '\n')
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            raise StorageError(
                "Couldn't record run outcome in '%s'" % self.path,
                domain=outcome.domain, stage='record', cause=e)
        self._last = outcome
        return outcome

    def history(self):
        try:
            with self.path.open() as f:
                lines = f.read().splitlines()
        except FileNotFoundError:
            return []
        result = []
        for line in lines:
            try:
                result.append(RunOutcome.from_dict(json.loads(line)))
            except (ValueError, TypeError):
                continue
        return result

    def last(self):
        if self._last is None:
            history = self.history()
            if history:
                self._last = history[-1]
        return self._last


_thread_locks = {}
_thread_locks_guard = threading.Lock()


class DomainGuard:
    """At most one run per domain, across threads and processes.

    Acquiring never waits: a busy guard raises RunInProgress.
    """

    def __init__(self, lock_dir, domain):
        self.lock_file = Path(lock_dir).joinpath("%s.lock" % domain)
        self.domain = domain
        with _thread_locks_guard:
            self._lock = _thread_locks.setdefault(
                str(self.lock_file), threading.Lock())
        self._fd = None

    @property
    def locked(self):
        if self._lock.locked():
            return True
        try:
            fd = open(str(self.lock_file))
        except FileNotFoundError:
            return False
        with fd:
            try:
                fcntl.flock(fd.fileno(), fcntl.LOCK_SH | fcntl.LOCK_NB)
            except OSError:
                return True
            fcntl.flock(fd.fileno(), fcntl.LOCK_UN)
        return False

    def acquire(self):
        if not self._lock.acquire(blocking=False):
            raise RunInProgress(
                "A renewal run is already active", domain=self.domain, stage='lock')
        try:
            self.lock_file.parent.mkdir(parents=True, exist_ok=True)
            fd = open(str(self.lock_file), 'w')
        except OSError as e:
            self._lock.release()
            raise StorageError(
                "Couldn't open lock file '%s'" % self.lock_file,
                domain=self.domain, stage='lock', cause=e)
        try:
            fcntl.flock(fd.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError:
            fd.close()
            self._lock.release()
            raise RunInProgress(
                "A renewal run is already active in another process",
                domain=self.domain, stage='lock')
        fd.write(str(os.getpid()))
        fd.flush()
        self._fd = fd

    def release(self):
        fd, self._fd = self._fd, None
        if fd is not None:
            fcntl.flock(fd.fileno(), fcntl.LOCK_UN)
            fd.close()
        self._lock.release()

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, *args):
        self.release()


def default_acme_factory(config, account_key, deadline=None):
    session = get_session(
        account_key.key, config.directory, retries=config.acme_retries)
    return ACME(
        session,
        poll_interval=config.poll_interval,
        poll_timeout=config.poll_timeout,
        deadline=deadline)


def make_installer(config):
    if config.installer == 'manual':
        return ManualInstaller()
    if config.cpanel_api_token:
        auth = ApiToken(config.cpanel_username, config.cpanel_api_token)
    else:
        auth = SessionLogin(config.cpanel_username, config.cpanel_password)
    return CPanelInstaller(
        config.cpanel_url, auth, verify_tls=config.cpanel_verify_tls)


class Orchestrator:
    """One end-to-end renewal run for the configured domain."""

    def __init__(self, config, keystore=None, responder=None, installer=None,
                 outcomes=None, acme_factory=None, now=utcnow):
        self.config = config
        self.keystore = keystore
        self.responder = responder
        self.installer = installer
        self.outcomes = outcomes
        self.acme_factory = acme_factory
        self.now = now
        if config.cert_dir is not None:
            if keystore is None:
                self.keystore = KeyStore(
                    config.cert_dir, key_type=config.key_type,
                    account_key_type=config.account_key_type)
            if outcomes is None:
                self.outcomes = OutcomeLog(config.cert_dir.joinpath('outcomes.jsonl'))
        if responder is None and config.web_root is not None:
            self.responder = Http01WebrootResponder(
                config.web_root, verify=config.verify_challenge)
        if acme_factory is None:
            self.acme_factory = partial(default_acme_factory, config)
        self._guard = None
        self.stage = None

    @property
    def guard(self):
        if self._guard is None:
            self._guard = DomainGuard(
                self.config.cert_dir.joinpath('.locks'), self.config.domain)
        return self._guard

    def status(self):
        last = self.outcomes.last() if self.outcomes is not None else None
        return dict(
            running=self.config.cert_dir is not None and self.guard.locked,
            last_run=last.to_dict() if last is not None else None)

    @property
    def pending_file(self):
        return self.config.domain_dir.joinpath(PENDING_FILE)

    def install_pending(self):
        """Whether a stored certificate still waits for installation."""
        if self.config.installer == 'manual':
            return False
        if self.pending_file.exists():
            return True
        last = self.outcomes.last()
        if last is None:
            return False
        if last.status == FAILED:
            return last.stage == 'install'
        return last.status == MANUAL and (
            last.renewed or last.reason == 'install-pending')

    def _mark_pending(self, bundle):
        data = json.dumps(dict(
            certificate=str(bundle.cert_path),
            timestamp=self.now().isoformat()), sort_keys=True)
        try:
            write_atomic(self.pending_file, data.encode('ascii'), mode=0o600)
        except OSError as e:
            raise StorageError(
                "Couldn't write '%s'" % self.pending_file,
                domain=self.config.domain, stage='persist', cause=e)

    def _clear_pending(self):
        try:
            self.pending_file.unlink()
        except FileNotFoundError:
            pass

    def _record(self, status, **kw):
        outcome = RunOutcome(
            timestamp=self.now().isoformat(), domain=self.config.domain,
            status=status, **kw)
        self.outcomes.append(outcome)
        audit.event('run_outcome', **{
            k: v for k, v in outcome.to_dict().items()
            if k not in ('manual_followup', 'timestamp')})
        return outcome

    def run(self, deadline=None, force=False):
        """Performs one run and returns its RunOutcome.

        Errors are recorded with the stage reached and re-raised.  A freshly
        issued certificate stays on disk even if installing it failed.
        """
        self.config.validate()
        try:
            self.guard.acquire()
        except RunInProgress:
            click.echo(click.style(
                "A renewal run for %s is already active." % self.config.domain,
                fg='red'), err=True)
            audit.warning('run_rejected', domain=self.config.domain)
            raise
        self.stage = 'policy'
        try:
            return self._run(deadline, force)
        except PanelcertError as e:
            if e.domain is None:
                e.domain = self.config.domain
            if e.stage is None:
                e.stage = self.stage
            self._fail(e, e.stage)
            raise
        except Exception as e:
            self._fail(e, self.stage)
            raise
        finally:
            self.guard.release()

    def _fail(self, error, stage):
        if isinstance(error, PanelcertError):
            context = error.context()
        else:
            context = dict(error=type(error).__name__, message=str(error))
        click.echo(click.style(
            "=== Certificate renewal failed: %s ===" % error, fg='red'), err=True)
        try:
            self._record(FAILED, stage=stage, error=context, reason=str(error))
        except StorageError as e:
            click.echo(click.style(str(e), fg='red'), err=True)

    def _run(self, deadline, force):
        config = self.config
        domain_dir = config.domain_dir
        key_path = self.keystore.path_for(config.domain)
        click.echo(click.style(
            "=== Starting certificate renewal for %s%s ===" % (
                config.domain, ' (DRY RUN)' if config.dry_run else ''),
            fg='green'))
        current = load_bundle(domain_dir, key_path=key_path)
        decision = needs_renewal(current, self.now(), config.renew_threshold_days)
        click.echo(decision.describe())
        audit.event(
            'renewal_decision', domain=config.domain, renew=decision.renew,
            reason=decision.reason)
        if not decision.renew and not force:
            if current is not None and self.install_pending():
                click.echo("Installing previously issued certificate.")
                return self._install(current, renewed=False, reason='install-pending')
            click.echo(click.style(
                "Certificate does not need renewal yet.", fg='green'))
            return self._record(SKIPPED, reason=decision.reason)
        if config.dry_run and config.dry_run_mode == 'all':
            click.echo("DRY RUN: Skipping certificate request and installation.")
            return self._record(DRY_RUN, reason=decision.reason)
        bundle = self._issue(deadline)
        if config.dry_run:
            click.echo("DRY RUN: Certificate issued, not saved or installed.")
            return self._record(DRY_RUN, renewed=False, reason=decision.reason)
        self.stage = 'persist'
        bundle = save_bundle(bundle, domain_dir)
        self._mark_pending(bundle)
        audit.event(
            'certificate_saved', domain=config.domain, path=str(bundle.cert_path),
            not_after=bundle.not_after.isoformat() if bundle.not_after else None)
        return self._install(bundle, renewed=True, reason=decision.reason)

    def _issue(self, deadline):
        config = self.config
        domains = config.domains
        self.stage = 'keys'
        account_key = self.keystore.load_or_create(ACCOUNT)
        domain_key = self.keystore.load_or_create(config.domain)
        csr = gencsr(domain_key.key, domains)
        self.stage = 'acme'
        acme = self.acme_factory(account_key, deadline=deadline)
        click.echo(click.style(
            "Requesting certificate for %s from %s." % (
                ', '.join(domains), config.directory),
            fg='green'))
        bundle = acme.issue(
            domains, config.email, csr, self.responder, key_path=domain_key.path)
        if not verify_domains(bundle.leaf_pem, domains):
            raise AcmeError(
                "Issued certificate doesn't match the requested names",
                domain=config.domain, stage='verify')
        click.echo(click.style(
            "Certificate issued by: %s" % issuer(bundle.leaf_pem), fg='green'))
        return bundle

    def _install(self, bundle, renewed, reason):
        self.stage = 'install'
        if self.installer is None:
            self.installer = make_installer(self.config)
        try:
            result = install_with_fallback(self.installer, bundle, self.config.domain)
        except PanelcertError as e:
            e.stage = 'install'
            raise
        except Exception as e:
            raise PanelcertError(
                "Installation failed unexpectedly", domain=self.config.domain,
                stage='install', cause=e) from e
        if result.installed:
            self._clear_pending()
            click.echo(click.style(
                "=== Certificate renewal completed successfully ===", fg='green'))
            return self._record(INSTALLED, renewed=renewed, installed=True, reason=reason)
        click.echo(click.style(
            "=== Certificate renewal completed, manual installation required ===",
            fg='yellow'))
        return self._record(
            MANUAL, renewed=renewed, reason=result.detail,
            manual_followup=result.manual_followup)
