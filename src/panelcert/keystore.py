from . import audit
from .errors import StorageError
from .utils import ensure_not_empty, write_atomic
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from pathlib import Path
import click
import dataclasses


ACCOUNT = 'account'


def genrsakey(keylen=2048):
    return rsa.generate_private_key(public_exponent=65537, key_size=keylen)


def geneckey(curve):
    return ec.generate_private_key(curve)


def generate_key(key_type):
    if key_type == 'rsa2048':
        return genrsakey(keylen=2048)
    elif key_type == 'rsa3072':
        return genrsakey(keylen=3072)
    elif key_type == 'rsa4096':
        return genrsakey(keylen=4096)
    elif key_type == 'ec256':
        return geneckey(ec.SECP256R1())
    elif key_type == 'ec384':
        return geneckey(ec.SECP384R1())
    raise ValueError("Unknown key type '%s'" % key_type)


def dump_key(key):
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption())


@dataclasses.dataclass(frozen=True)
class KeyMaterial:
    identity: str
    pem: bytes = dataclasses.field(repr=False)
    key: object = dataclasses.field(repr=False, compare=False)
    path: Path = None


class KeyStore:
    """Long-lived private keys, one per identity.

    The account key lives at ``<base>/account.key``, domain keys at
    ``<base>/<domain>/private.key``.
    """

    def __init__(self, base, key_type='rsa2048', account_key_type=None):
        self.base = Path(base)
        self.key_type = key_type
        self.account_key_type = account_key_type or key_type

    def path_for(self, identity):
        if identity == ACCOUNT:
            return self.base.joinpath('account.key')
        if not identity or '/' in identity or identity.startswith('.'):
            raise StorageError("Invalid key identity %r" % identity, stage='keys')
        return self.base.joinpath(identity, 'private.key')

    def load(self, identity):
        fn = self.path_for(identity)
        try:
            if not ensure_not_empty(fn):
                return None
            pem = fn.read_bytes()
        except OSError as e:
            raise StorageError(
                "Couldn't read key for '%s' at '%s'" % (identity, fn),
                stage='keys', cause=e)
        try:
            key = serialization.load_pem_private_key(pem, password=None)
        except (ValueError, TypeError) as e:
            raise StorageError(
                "Key for '%s' at '%s' is unparseable, refusing to replace it" % (identity, fn),
                stage='keys', cause=e)
        return KeyMaterial(identity=identity, pem=pem, key=key, path=fn)

    def load_or_create(self, identity):
        material = self.load(identity)
        if material is not None:
            click.echo(click.style(
                "Using existing %s key '%s'." % (identity, material.path),
                fg='green'))
            return material
        fn = self.path_for(identity)
        key_type = self.account_key_type if identity == ACCOUNT else self.key_type
        key = generate_key(key_type)
        pem = dump_key(key)
        click.echo("Writing %s key '%s'." % (identity, fn))
        try:
            write_atomic(fn, pem, mode=0o600)
        except OSError as e:
            raise StorageError(
                "Couldn't write key for '%s' to '%s'" % (identity, fn),
                stage='keys', cause=e)
        audit.event(
            'key_generated', identity=identity, key_type=key_type, path=str(fn))
        return KeyMaterial(identity=identity, pem=pem, key=key, path=fn)
