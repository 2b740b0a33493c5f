from .errors import AcmeError
from .utils import problem_document
from base64 import urlsafe_b64encode
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature
from functools import partial
import click
import hashlib
import json
import requests
import time


BAD_NONCE = 'urn:ietf:params:acme:error:badNonce'
MAX_BAD_NONCES = 5
USER_AGENT = 'panelcert'
EC_ALGORITHMS = {
    'secp256r1': ('ES256', 'P-256', hashes.SHA256(), 32),
    'secp384r1': ('ES384', 'P-384', hashes.SHA384(), 48)}


def b64(data):
    return urlsafe_b64encode(data).replace(b"=", b"").decode('ascii')


def _encode(number, size=None):
    if size is None:
        size = (number.bit_length() + 7) // 8
    return b64(number.to_bytes(size, 'big'))


def get_jwk(key):
    pub_numbers = key.public_key().public_numbers()
    if isinstance(key, rsa.RSAPrivateKey):
        return dict(
            kty="RSA",
            e=_encode(pub_numbers.e),
            n=_encode(pub_numbers.n))
    elif isinstance(key, ec.EllipticCurvePrivateKey):
        (alg, crv, hash_alg, size) = EC_ALGORITHMS[key.curve.name]
        return dict(
            kty="EC",
            crv=crv,
            x=_encode(pub_numbers.x, size),
            y=_encode(pub_numbers.y, size))
    raise TypeError("Unsupported account key type %s" % type(key).__name__)


def get_alg(key):
    if isinstance(key, rsa.RSAPrivateKey):
        return "RS256"
    return EC_ALGORITHMS[key.curve.name][0]


def get_thumbprint(jwk):
    return b64(hashlib.sha256(json.dumps(
        jwk,
        sort_keys=True,
        separators=(',', ':')).encode('ascii')).digest())


def sign(sig_data, key):
    if isinstance(key, rsa.RSAPrivateKey):
        return key.sign(sig_data, padding.PKCS1v15(), hashes.SHA256())
    (alg, crv, hash_alg, size) = EC_ALGORITHMS[key.curve.name]
    (r, s) = decode_dss_signature(key.sign(sig_data, ec.ECDSA(hash_alg)))
    return r.to_bytes(size, 'big') + s.to_bytes(size, 'big')


def protected(header, uri, nonce, kid):
    data = dict(header)
    data['nonce'] = nonce
    data['url'] = uri
    if kid is not None:
        data.pop('jwk')
        data['kid'] = kid
    return b64(json.dumps(data, sort_keys=True).encode('utf-8'))


def dumps(payload):
    if payload is None:
        return ""
    return b64(json.dumps(payload, sort_keys=True).encode('utf-8'))


def _dumps_signed(nonce, uri, header, payload, sign, kid=None):
    data = protected(header, uri, nonce, kid)
    sig_data = "%s.%s" % (data, payload)
    signature = b64(sign(sig_data.encode('ascii')))
    return dict(
        protected=data,
        payload=payload,
        signature=signature)


class ACMESession:
    """Signed transport to one ACME directory.

    Keeps the replay nonce, the account URL (``kid``) once known, retries
    ``badNonce`` rejections and transient network failures, and turns CA
    problem documents into :class:`AcmeError`.
    """

    def __init__(self, dumps_signed, thumbprint, directory_url,
                 retries=3, backoff=1.0, timeout=30, sleep=time.sleep):
        self.dumps_signed = dumps_signed
        self.directory_url = directory_url
        self.kid = None
        self.nonce = None
        self.thumbprint = thumbprint
        self.retries = retries
        self.backoff = backoff
        self.timeout = timeout
        self.sleep = sleep
        self._directory = None
        self.session = requests.Session()
        self.session.headers['User-Agent'] = USER_AGENT
        self.session.hooks = dict(response=self.response_hook)

    def response_hook(self, response, *args, **kwargs):
        if 'Replay-Nonce' in response.headers:
            self.nonce = response.headers['Replay-Nonce']

    def _send(self, method, uri, make_kw=dict):
        delay = self.backoff
        attempt = 0
        while True:
            try:
                response = self.session.request(
                    method, uri, timeout=self.timeout, **make_kw())
            except (requests.ConnectionError, requests.Timeout) as e:
                error = e
            else:
                if response.status_code < 500:
                    return response
                error = None
            if attempt >= self.retries:
                if error is None:
                    raise AcmeError(
                        "CA server error on %s %s" % (method, uri),
                        problem=problem_document(response), stage='transport')
                raise AcmeError(
                    "Couldn't reach CA at %s" % uri, stage='transport', cause=error)
            attempt += 1
            click.echo(click.style(
                "Retrying %s %s in %ss (%s/%s)." % (
                    method, uri, delay, attempt, self.retries),
                fg='yellow'))
            self.sleep(delay)
            delay = delay * 2

    @property
    def directory(self):
        if self._directory is None:
            res = self._send('GET', self.directory_url)
            content_type = res.headers.get('Content-Type', '')
            if res.status_code != 200 or not content_type.startswith('application/json'):
                raise AcmeError(
                    "Couldn't get directory from CA server '%s'" % self.directory_url,
                    problem=problem_document(res), stage='directory')
            self._directory = res.json()
        return self._directory

    def new_nonce(self):
        res = self._send('HEAD', self.directory['newNonce'])
        if 'Replay-Nonce' not in res.headers:
            raise AcmeError(
                "CA didn't return a nonce", problem=problem_document(res),
                stage='transport')
        return res.headers['Replay-Nonce']

    def _take_nonce(self):
        if self.nonce is None:
            self.new_nonce()
        (nonce, self.nonce) = (self.nonce, None)
        return nonce

    def _signed_kw(self, uri, payload):
        def make_kw():
            body = self.dumps_signed(
                self._take_nonce(), uri, payload=dumps(payload), kid=self.kid)
            return dict(
                headers={'Content-Type': 'application/jose+json'},
                json=body)
        return make_kw

    def post_signed(self, uri, payload):
        """POSTs ``payload`` signed with the account key.

        Uses the ``jwk`` header until the account URL is known, ``kid``
        afterwards.  A ``payload`` of None is a POST-as-GET.
        """
        bad_nonces = 0
        while True:
            response = self._send('POST', uri, self._signed_kw(uri, payload))
            if response.status_code < 400:
                return response
            problem = problem_document(response)
            if problem.get('type') == BAD_NONCE and bad_nonces < MAX_BAD_NONCES:
                bad_nonces += 1
                continue
            raise AcmeError(
                "CA rejected request to %s" % uri, problem=problem)

    def post_as_get(self, uri):
        return self.post_signed(uri, None)


def get_session(key, directory_url, **kw):
    jwk = get_jwk(key)
    dumps_signed = partial(
        _dumps_signed,
        header=dict(alg=get_alg(key), jwk=dict(jwk)),
        sign=partial(sign, key=key))
    thumbprint = get_thumbprint(jwk)
    return ACMESession(dumps_signed, thumbprint, directory_url, **kw)
