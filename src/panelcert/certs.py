from .errors import StorageError
from .utils import write_atomic
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.x509.oid import NameOID
from pathlib import Path
import OpenSSL
import click
import dataclasses
import datetime
import re


PEM_RE = re.compile(
    r"-----BEGIN CERTIFICATE-----\r?\n.+?\r?\n-----END CERTIFICATE-----",
    re.DOTALL)
CERT_FILE = 'certificate.crt'
CHAIN_FILE = 'chain.crt'
FULLCHAIN_FILE = 'fullchain.crt'


@dataclasses.dataclass(frozen=True)
class CertificateBundle:
    leaf_pem: str
    chain_pems: tuple = ()
    key_path: Path = None
    not_after: datetime.datetime = None
    cert_path: Path = None
    chain_path: Path = None
    fullchain_path: Path = None
    key_pem: bytes = dataclasses.field(default=None, repr=False)

    @property
    def chain_pem(self):
        return join_chain(*self.chain_pems)

    @property
    def fullchain_pem(self):
        return join_chain(self.leaf_pem, *self.chain_pems)

    @property
    def stored(self):
        return self.cert_path is not None


def split_chain(fullchain):
    """Splits a PEM chain into the leaf and the remaining certificates.

    The first block is the leaf, the others keep the order the CA returned
    them in.
    """
    blocks = pem_blocks(fullchain)
    if not blocks:
        raise ValueError("No PEM certificate found")
    return blocks[0], tuple(blocks[1:])


def pem_blocks(text):
    if isinstance(text, bytes):
        text = text.decode('ascii')
    return [m.group(0).replace('\r\n', '\n') for m in PEM_RE.finditer(text)]


def join_chain(*pems):
    return ''.join(
        pem if pem.endswith('\n') else pem + '\n'
        for pem in pems)


def load_certificate(pem):
    if isinstance(pem, str):
        pem = pem.encode('ascii')
    return OpenSSL.crypto.load_certificate(OpenSSL.crypto.FILETYPE_PEM, pem)


def not_after(pem):
    """Returns the notAfter of the certificate as an aware datetime, or None."""
    try:
        cert = load_certificate(pem)
    except (OpenSSL.crypto.Error, ValueError, UnicodeError):
        return None
    value = cert.get_notAfter()
    if value is None:
        return None
    return datetime.datetime.strptime(
        value.decode('ascii'), '%Y%m%d%H%M%SZ').replace(
            tzinfo=datetime.timezone.utc)


def gencsr(key, domains):
    """Returns a DER encoded CSR for ``domains``, the first being the CN."""
    builder = x509.CertificateSigningRequestBuilder().subject_name(
        x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domains[0])]))
    builder = builder.add_extension(
        x509.SubjectAlternativeName([x509.DNSName(x) for x in domains]),
        critical=False)
    csr = builder.sign(key, hashes.SHA256())
    return csr.public_bytes(serialization.Encoding.DER)


def certificate_names(pem):
    cert = load_certificate(pem).to_cryptography()
    names = set(
        x.value
        for x in cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME))
    try:
        ext = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    except x509.ExtensionNotFound:
        pass
    else:
        names.update(ext.value.get_values_for_type(x509.DNSName))
    return names


def verify_domains(pem, domains):
    unmatched = set(domains).symmetric_difference(certificate_names(pem))
    if unmatched:
        click.echo(click.style(
            "Unmatched alternate names %s" % ', '.join(sorted(unmatched)), fg="red"))
        return False
    return True


def issuer(pem):
    cert = load_certificate(pem)
    components = dict(cert.get_issuer().get_components())
    return "%s %s" % (
        components.get(b'O', b'unknown').decode('utf-8'),
        components.get(b'CN', b'unknown').decode('utf-8'))


def bundle_from_chain(fullchain, key_path=None, key_pem=None):
    leaf, chain = split_chain(fullchain)
    return CertificateBundle(
        leaf_pem=leaf, chain_pems=chain, key_path=key_path,
        not_after=not_after(leaf), key_pem=key_pem)


def save_bundle(bundle, base):
    """Writes leaf, chain and full chain below ``base``.

    Returns a new bundle pointing at the written files.
    """
    base = Path(base)
    cert_path = base.joinpath(CERT_FILE)
    chain_path = base.joinpath(CHAIN_FILE)
    fullchain_path = base.joinpath(FULLCHAIN_FILE)
    try:
        # leaf last, it's what marks a bundle as present
        write_atomic(chain_path, bundle.chain_pem.encode('ascii'))
        write_atomic(fullchain_path, bundle.fullchain_pem.encode('ascii'))
        write_atomic(cert_path, join_chain(bundle.leaf_pem).encode('ascii'))
    except OSError as e:
        raise StorageError(
            "Couldn't write certificate files to '%s'" % base,
            stage='persist', cause=e)
    return dataclasses.replace(
        bundle, cert_path=cert_path, chain_path=chain_path,
        fullchain_path=fullchain_path)


def load_bundle(base, key_path=None):
    """Reads the stored bundle below ``base``.

    Returns None if there is no certificate.  A certificate that can't be
    read or parsed yields a bundle without ``not_after``.
    """
    base = Path(base)
    cert_path = base.joinpath(CERT_FILE)
    chain_path = base.joinpath(CHAIN_FILE)
    try:
        text = cert_path.read_text('ascii')
    except FileNotFoundError:
        return None
    except (OSError, UnicodeError):
        return CertificateBundle(
            leaf_pem='', key_path=key_path, cert_path=cert_path)
    try:
        leaf, _ = split_chain(text)
    except ValueError:
        return CertificateBundle(
            leaf_pem=text, key_path=key_path, cert_path=cert_path)
    chain = ()
    try:
        chain = tuple(pem_blocks(chain_path.read_text('ascii')))
    except FileNotFoundError:
        chain_path = None
    except (OSError, UnicodeError):
        pass
    return CertificateBundle(
        leaf_pem=leaf, chain_pems=chain, key_path=key_path,
        not_after=not_after(leaf), cert_path=cert_path, chain_path=chain_path,
        fullchain_path=base.joinpath(FULLCHAIN_FILE))
