"""Runtime configuration.

A single :class:`Config` is built at startup by :func:`load_config` from an
optional JSON file, overlaid by environment variables, overlaid by command
line options, and then passed explicitly to everything that needs it.
"""

from .errors import ConfigError
from pathlib import Path
import dataclasses
import json
import os


PRODUCTION = "https://acme-v02.api.letsencrypt.org/directory"
STAGING = "https://acme-staging-v02.api.letsencrypt.org/directory"
PLACEHOLDER_DOMAIN = 'your-domain.com'
KEY_TYPES = ('rsa2048', 'rsa3072', 'rsa4096', 'ec256', 'ec384')
INSTALLERS = ('cpanel', 'manual')
DRY_RUN_MODES = ('install', 'all')


def _bool(value):
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('1', 'true', 'yes', 'on')


def _names(value):
    if isinstance(value, str):
        value = value.replace(',', ' ').split()
    return tuple(x.strip().lower() for x in value if x.strip())


def _path(value):
    return Path(value).expanduser() if value else None


@dataclasses.dataclass(frozen=True)
class Config:
    domain: str = None
    alt_names: tuple = ()
    email: str = None
    web_root: Path = None
    cert_dir: Path = None
    installer: str = 'cpanel'
    cpanel_url: str = None
    cpanel_username: str = None
    cpanel_password: str = None
    cpanel_api_token: str = None
    cpanel_verify_tls: bool = True
    directory_url: str = None
    staging: bool = False
    dry_run: bool = False
    dry_run_mode: str = 'install'
    renew_threshold_days: int = 30
    key_type: str = 'rsa2048'
    account_key_type: str = 'rsa2048'
    poll_interval: float = 2.0
    poll_timeout: float = 120.0
    acme_retries: int = 3
    verify_challenge: bool = False
    log_file: Path = None
    log_max_bytes: int = 10 * 1024 * 1024
    log_backups: int = 5
    trigger_token: str = None
    listen_host: str = '127.0.0.1'
    listen_port: int = 8080

    @property
    def domains(self):
        names = [self.domain] if self.domain else []
        names.extend(x for x in self.alt_names if x not in names)
        return names

    @property
    def directory(self):
        if self.directory_url:
            return self.directory_url
        return STAGING if self.staging else PRODUCTION

    @property
    def domain_dir(self):
        return self.cert_dir.joinpath(self.domain)

    @property
    def skips_install(self):
        return self.dry_run or self.installer == 'manual'

    def validate(self, serve=False):
        """Raises ConfigError naming every missing or invalid setting."""
        missing = []
        if not self.domain or self.domain == PLACEHOLDER_DOMAIN:
            missing.append('domain')
        for name in ('email', 'web_root', 'cert_dir'):
            if not getattr(self, name):
                missing.append(name)
        if self.installer == 'cpanel' and not self.dry_run:
            if not self.cpanel_url:
                missing.append('cpanel_url')
            if not self.cpanel_username:
                missing.append('cpanel_username')
            if not (self.cpanel_password or self.cpanel_api_token):
                missing.append('cpanel_password or cpanel_api_token')
        if serve and not self.trigger_token:
            missing.append('trigger_token')
        if missing:
            raise ConfigError(
                "Missing required configuration: %s" % ', '.join(missing),
                domain=self.domain, stage='config')
        invalid = []
        if self.installer not in INSTALLERS:
            invalid.append('installer=%s' % self.installer)
        if self.dry_run_mode not in DRY_RUN_MODES:
            invalid.append('dry_run_mode=%s' % self.dry_run_mode)
        for name in ('key_type', 'account_key_type'):
            if getattr(self, name) not in KEY_TYPES:
                invalid.append('%s=%s' % (name, getattr(self, name)))
        if self.renew_threshold_days < 0:
            invalid.append('renew_threshold_days=%s' % self.renew_threshold_days)
        if self.poll_interval < 0 or self.poll_timeout <= 0:
            invalid.append('poll_interval/poll_timeout')
        if invalid:
            raise ConfigError(
                "Invalid configuration: %s" % ', '.join(invalid),
                domain=self.domain, stage='config')
        return self


# field name, environment variable, converter
FIELDS = (
    ('domain', 'DOMAIN', lambda x: x.strip().lower()),
    ('alt_names', 'ALT_NAMES', _names),
    ('email', 'EMAIL', str),
    ('web_root', 'WEB_ROOT', _path),
    ('cert_dir', 'CERT_DIR', _path),
    ('installer', 'INSTALLER', str),
    ('cpanel_url', 'CPANEL_URL', lambda x: x.rstrip('/')),
    ('cpanel_username', 'CPANEL_USERNAME', str),
    ('cpanel_password', 'CPANEL_PASSWORD', str),
    ('cpanel_api_token', 'CPANEL_API_TOKEN', str),
    ('cpanel_verify_tls', 'CPANEL_VERIFY_TLS', _bool),
    ('directory_url', 'DIRECTORY_URL', str),
    ('staging', 'STAGING', _bool),
    ('dry_run', 'DRY_RUN', _bool),
    ('dry_run_mode', 'DRY_RUN_MODE', str),
    ('renew_threshold_days', 'RENEW_THRESHOLD_DAYS', int),
    ('key_type', 'KEY_TYPE', lambda x: x.lower()),
    ('account_key_type', 'ACCOUNT_KEY_TYPE', lambda x: x.lower()),
    ('poll_interval', 'POLL_INTERVAL', float),
    ('poll_timeout', 'POLL_TIMEOUT', float),
    ('acme_retries', 'ACME_RETRIES', int),
    ('verify_challenge', 'VERIFY_CHALLENGE', _bool),
    ('log_file', 'LOG_FILE', _path),
    ('log_max_bytes', 'LOG_MAX_BYTES', int),
    ('log_backups', 'LOG_BACKUPS', int),
    ('trigger_token', 'TRIGGER_TOKEN', str),
    ('listen_host', 'LISTEN_HOST', str),
    ('listen_port', 'LISTEN_PORT', int))


def _camel(name):
    head, *rest = name.split('_')
    return head + ''.join(x.capitalize() for x in rest)


def read_config_file(path):
    if path is None or not path.exists():
        return {}
    try:
        with path.open() as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        raise ConfigError(
            "Couldn't read config file '%s'" % path, stage='config', cause=e)
    if not isinstance(data, dict):
        raise ConfigError(
            "Config file '%s' must contain a JSON object" % path, stage='config')
    return data


def load_config(path=None, environ=None, **overrides):
    """Builds the Config from file, environment and explicit overrides.

    File keys may be snake_case or camelCase (``cpanelUrl``).  Overrides
    that are ``None`` are ignored, so unset command line options don't
    mask the file or environment.
    """
    if environ is None:
        environ = os.environ
    if path is None:
        path = environ.get('CONFIG_FILE', './config.json')
    file_config = read_config_file(Path(path))
    values = {}
    for name, env, convert in FIELDS:
        raw = file_config.get(name, file_config.get(_camel(name)))
        if environ.get(env) not in (None, ''):
            raw = environ[env]
        if overrides.get(name) is not None:
            raw = overrides[name]
        if raw is None:
            continue
        try:
            values[name] = convert(raw)
        except (AttributeError, TypeError, ValueError) as e:
            raise ConfigError(
                "Invalid value for %s: %r" % (name, raw), stage='config', cause=e)
    unknown = set(overrides) - set(x[0] for x in FIELDS)
    if unknown:
        raise TypeError("Unknown config options: %s" % ', '.join(sorted(unknown)))
    return Config(**values)
