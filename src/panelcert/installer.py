from . import audit
from .errors import InstallError
import click
import dataclasses
import requests


@dataclasses.dataclass(frozen=True)
class InstallResult:
    installed: bool
    detail: str
    manual_followup: dict = None

    @property
    def manual(self):
        return not self.installed


class AuthenticationFailed(InstallError):
    pass


class SessionLogin:
    """Password login, keeping the cPanel session cookie and token path."""

    def __init__(self, username, password):
        self.username = username
        self.password = password
        self.security_token = None

    def authenticate(self, session, base_url, refresh=False):
        if self.security_token is not None and not refresh:
            return self.security_token
        self.security_token = None
        session.cookies.clear()
        try:
            r = session.post(
                "%s/login/?login_only=1" % base_url,
                data={'user': self.username, 'pass': self.password})
        except requests.RequestException as e:
            raise AuthenticationFailed("cPanel login failed", cause=e)
        try:
            data = r.json()
        except ValueError:
            data = {}
        if r.status_code != 200 or data.get('status') != 1:
            raise AuthenticationFailed(
                "cPanel login failed with status %s" % r.status_code)
        self.security_token = data.get('security_token', '').rstrip('/')
        click.echo(click.style("Logged into cPanel.", fg='green'))
        return self.security_token


class ApiToken:
    """API token authentication, no login round trip."""

    def __init__(self, username, token):
        self.username = username
        self.token = token

    def authenticate(self, session, base_url, refresh=False):
        session.headers['Authorization'] = "cpanel %s:%s" % (self.username, self.token)
        return ''


class CPanelInstaller:
    """Installs certificates with the cPanel UAPI ``SSL::install_ssl`` call."""

    def __init__(self, base_url, auth, verify_tls=True, timeout=60, session=None):
        self.base = base_url.rstrip('/')
        self.auth = auth
        self.timeout = timeout
        self.s = session or requests.Session()
        self.s.verify = verify_tls

    def _u(self, prefix, p):
        return "%s%s%s" % (self.base, prefix, p)

    def _submit(self, prefix, bundle, domain):
        return self.s.post(
            self._u(prefix, '/execute/SSL/install_ssl'),
            data=dict(
                domain=domain,
                cert=bundle.leaf_pem,
                key=read_key(bundle),
                cabundle=bundle.chain_pem),
            timeout=self.timeout)

    def install(self, bundle, domain):
        last = None
        for attempt in range(2):
            try:
                prefix = self.auth.authenticate(self.s, self.base, refresh=attempt > 0)
                response = self._submit(prefix, bundle, domain)
                if response.status_code in (401, 403):
                    raise AuthenticationFailed(
                        "cPanel rejected the session with status %s" % response.status_code)
            except AuthenticationFailed as e:
                last = e
                click.echo(click.style(
                    "%s, authenticating again." % e.message, fg='yellow'))
                continue
            except requests.RequestException as e:
                raise InstallError(
                    "Certificate upload to cPanel failed", domain=domain,
                    stage='install', cause=e)
            return self._interpret(response, domain)
        raise InstallError(
            "Authentication to cPanel failed after retry", domain=domain,
            stage='install', cause=last)

    def _interpret(self, response, domain):
        try:
            data = response.json()
        except ValueError:
            data = None
        if not isinstance(data, dict):
            raise InstallError(
                "cPanel returned no structured result (status %s)" % response.status_code,
                domain=domain, stage='install')
        if response.status_code != 200 or data.get('status') != 1:
            errors = data.get('errors') or ['status %s' % data.get('status')]
            raise InstallError(
                "cPanel refused the certificate: %s" % '; '.join(str(x) for x in errors),
                domain=domain, stage='install')
        messages = data.get('messages') or ['Certificate installed.']
        return InstallResult(
            installed=True, detail=' '.join(str(x) for x in messages))


class ManualInstaller:
    """For deployments without a panel: every install is manual."""

    def install(self, bundle, domain):
        return manual_result(bundle, "No control panel configured.")


def read_key(bundle):
    if bundle.key_pem is not None:
        return bundle.key_pem.decode('ascii')
    try:
        return bundle.key_path.read_text('ascii')
    except (AttributeError, OSError) as e:
        raise InstallError(
            "Couldn't read private key '%s'" % bundle.key_path,
            stage='install', cause=e)


def manual_result(bundle, reason):
    if bundle.stored:
        followup = dict(certificate=str(bundle.cert_path))
        if bundle.key_path is not None:
            followup['private_key'] = str(bundle.key_path)
        if bundle.chain_path is not None:
            followup['chain'] = str(bundle.chain_path)
    else:
        followup = dict(
            certificate=bundle.leaf_pem,
            chain=bundle.chain_pem)
        if bundle.key_pem is not None:
            followup['private_key'] = bundle.key_pem.decode('ascii')
        elif bundle.key_path is not None:
            followup['private_key'] = str(bundle.key_path)
    return InstallResult(installed=False, detail=reason, manual_followup=followup)


def install_with_fallback(installer, bundle, domain):
    """Installs the bundle, downgrading any InstallError to a manual result."""
    click.echo("Installing certificate for %s." % domain)
    try:
        result = installer.install(bundle, domain)
    except InstallError as e:
        click.echo(click.style("Certificate upload failed: %s" % e, fg='yellow'))
        result = manual_result(bundle, str(e))
    if result.installed:
        click.echo(click.style(result.detail, fg='green'))
        audit.event('install_result', domain=domain, installed=True, detail=result.detail)
    else:
        click.echo(click.style(
            "FALLBACK: Certificate files are ready for manual upload:", fg='yellow'))
        for label, value in sorted(result.manual_followup.items()):
            if bundle.stored:
                click.echo("%s: %s" % (label, value))
            else:
                click.echo("%s: %s bytes in the run outcome" % (label, len(value)))
        audit.warning(
            'install_result', domain=domain, installed=False,
            detail=result.detail, manual_followup=sorted(result.manual_followup))
    return result
