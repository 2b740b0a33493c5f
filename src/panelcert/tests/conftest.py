from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID
from urllib.parse import parse_qs, urlsplit
import base64
import binascii
import datetime
import http.server
import json
import pytest
import requests
import threading
import time


ACCOUNT_DOES_NOT_EXIST = 'urn:ietf:params:acme:error:accountDoesNotExist'
BAD_NONCE = 'urn:ietf:params:acme:error:badNonce'
UNAUTHORIZED = 'urn:ietf:params:acme:error:unauthorized'


def d64(data):
    for pad in ('', '=', '=='):
        try:
            return base64.urlsafe_b64decode(data + pad)
        except binascii.Error:
            pass


def make_ca():
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, 'Fake CA'),
        x509.NameAttribute(NameOID.COMMON_NAME, 'Fake Intermediate')])
    now = datetime.datetime.now(datetime.timezone.utc)
    builder = x509.CertificateBuilder()
    builder = builder.subject_name(name).issuer_name(name)
    builder = builder.public_key(key.public_key())
    builder = builder.serial_number(x509.random_serial_number())
    builder = builder.not_valid_before(now - datetime.timedelta(days=1))
    builder = builder.not_valid_after(now + datetime.timedelta(days=3650))
    builder = builder.add_extension(
        x509.BasicConstraints(ca=True, path_length=None), critical=True)
    return key, builder.sign(key, hashes.SHA256())


def sign_leaf(ca_key, ca_cert, public_key, names, days=90):
    now = datetime.datetime.now(datetime.timezone.utc)
    builder = x509.CertificateBuilder()
    builder = builder.subject_name(x509.Name([
        x509.NameAttribute(NameOID.COMMON_NAME, names[0])]))
    builder = builder.issuer_name(ca_cert.subject)
    builder = builder.public_key(public_key)
    builder = builder.serial_number(x509.random_serial_number())
    builder = builder.not_valid_before(now - datetime.timedelta(days=1))
    builder = builder.not_valid_after(now + datetime.timedelta(days=days))
    builder = builder.add_extension(
        x509.SubjectAlternativeName([x509.DNSName(x) for x in names]),
        critical=False)
    cert = builder.sign(ca_key, hashes.SHA256())
    return "".join([
        cert.public_bytes(serialization.Encoding.PEM).decode('ascii'),
        ca_cert.public_bytes(serialization.Encoding.PEM).decode('ascii')])


class HTTPRequestHandler(http.server.BaseHTTPRequestHandler):
    """A tiny ACME CA validating http-01 challenges from the web root."""

    def make_url(self, path):
        addr = "http://%s:%s/{0}" % self.server.socket.getsockname()
        return addr.format(path)

    def send_response(self, code, message=None):
        super().send_response(code, message)
        self.server.nonces += 1
        self.send_header('Replay-Nonce', 'nonce%s' % self.server.nonces)

    def do_GET(self):
        self.server.requests.append(('GET', self.path))
        if self.path == '/directory':
            self.send_response(200)
            methods = ['newAccount', 'newNonce', 'newOrder']
            self.write_response({x: self.make_url(x) for x in methods})
        else:
            raise ValueError("GET %s" % self.path)

    def do_HEAD(self):
        self.server.requests.append(('HEAD', self.path))
        if self.path == '/newNonce':
            self.send_response(200)
            self.end_headers()
        else:
            raise ValueError("HEAD %s" % self.path)

    @property
    def data(self):
        if not hasattr(self, '_data'):
            data = self.rfile.read(int(self.headers['Content-Length']))
            self._data = json.loads(data.decode('utf-8'))
        return self._data

    def get_payload(self):
        payload = d64(self.data['payload'])
        if not payload:
            return None
        return json.loads(payload.decode('utf-8'))

    def get_protected(self):
        protected = d64(self.data['protected'])
        return json.loads(protected.decode('utf-8'))

    def write_response(self, response, content_type='application/json'):
        if isinstance(response, str):
            body = response.encode('ascii')
        else:
            body = json.dumps(response).encode('ascii')
        self.send_header('Content-Type', content_type)
        self.send_header('Content-Length', str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def write_problem(self, code, type, detail):
        self.send_response(code)
        self.write_response(
            dict(type=type, detail=detail, status=code),
            content_type='application/problem+json')

    def account_thumbprint(self):
        from panelcert.acmesession import get_thumbprint
        protected = self.get_protected()
        if 'jwk' in protected:
            return get_thumbprint(protected['jwk'])
        return self.server.kids[protected['kid']]

    def order_status(self, order):
        statuses = [self.server.authzs[x]['status'] for x in order['authzs']]
        if order['status'] == 'pending':
            if 'invalid' in statuses:
                order['status'] = 'invalid'
            elif all(x == 'valid' for x in statuses):
                order['status'] = 'ready'
        return order['status']

    def order_response(self, number):
        order = self.server.orders[number]
        response = dict(
            status=self.order_status(order),
            identifiers=[dict(type='dns', value=x) for x in order['domains']],
            authorizations=[self.make_url('authz/%s' % x) for x in order['authzs']],
            finalize=self.make_url('finalize/%s' % number))
        if order.get('certificate'):
            response['certificate'] = self.make_url('cert/%s' % number)
        return response

    def authz_response(self, number):
        authz = self.server.authzs[number]
        status = authz['status']
        if authz['pending_polls'] > 0 and authz['triggered']:
            authz['pending_polls'] -= 1
            status = 'pending'
        challenge = dict(
            type='http-01', url=self.make_url('chall/%s' % number),
            token=authz['token'], status=status)
        if status == 'invalid':
            challenge['error'] = dict(
                type=UNAUTHORIZED, detail=authz['error'], status=403)
        return dict(
            identifier=dict(type='dns', value=authz['domain']),
            status=status, challenges=[challenge])

    def validate(self, number):
        authz = self.server.authzs[number]
        fn = self.server.web_root.joinpath(
            '.well-known', 'acme-challenge', authz['token'])
        expected = "%s.%s" % (authz['token'], self.account_thumbprint())
        try:
            content = fn.read_text('ascii')
        except OSError:
            content = None
        self.server.validations.append((authz['domain'], content))
        authz['triggered'] = True
        if authz['domain'] in self.server.fail_domains:
            authz['status'] = 'invalid'
            authz['error'] = "Invalid response from http://%s/" % authz['domain']
        elif content != expected:
            authz['status'] = 'invalid'
            authz['error'] = "Key authorization mismatch"
        else:
            authz['status'] = 'valid'

    def do_POST(self):
        server = self.server
        path = self.path.strip('/')
        server.requests.append(('POST', self.path))
        if server.bad_nonces > 0:
            self.data
            server.bad_nonces -= 1
            self.write_problem(400, BAD_NONCE, "JWS has an invalid anti-replay nonce")
            return
        if path == 'newAccount':
            payload = self.get_payload()
            thumbprint = self.account_thumbprint()
            if thumbprint in server.accounts:
                self.send_response(200)
                self.send_header('Location', server.accounts[thumbprint])
                self.write_response(dict(status='valid'))
            elif payload.get('onlyReturnExisting'):
                self.write_problem(400, ACCOUNT_DOES_NOT_EXIST, "No account exists")
            else:
                assert payload['termsOfServiceAgreed'] is True
                url = self.make_url('account/%s' % (len(server.accounts) + 1))
                server.accounts[thumbprint] = url
                server.kids[url] = thumbprint
                server.contacts.append(payload['contact'])
                self.send_response(201)
                self.send_header('Location', url)
                self.write_response(dict(status='valid', contact=payload['contact']))
            return
        self.account_thumbprint()
        (kind, _, number) = path.partition('/')
        if kind == 'newOrder':
            payload = self.get_payload()
            number = str(len(server.orders) + 1)
            domains = [x['value'] for x in payload['identifiers']]
            authzs = []
            for domain in domains:
                authz = str(len(server.authzs) + 1)
                server.authzs[authz] = dict(
                    domain=domain, status='pending', token='token%s' % authz,
                    pending_polls=server.pending_polls, triggered=False)
                authzs.append(authz)
            server.orders[number] = dict(
                domains=domains, authzs=authzs, status='pending')
            self.send_response(201)
            self.send_header('Location', self.make_url('order/%s' % number))
            self.write_response(self.order_response(number))
        elif kind == 'authz':
            self.send_response(200)
            self.write_response(self.authz_response(number))
        elif kind == 'chall':
            self.validate(number)
            self.send_response(200)
            self.write_response(dict(
                type='http-01', status='processing',
                url=self.make_url(path), token=server.authzs[number]['token']))
        elif kind == 'order':
            self.send_response(200)
            self.write_response(self.order_response(number))
        elif kind == 'finalize':
            order = server.orders[number]
            if self.order_status(order) != 'ready':
                self.write_problem(
                    403, 'urn:ietf:params:acme:error:orderNotReady', "Order not ready")
                return
            csr = x509.load_der_x509_csr(d64(self.get_payload()['csr']))
            order['certificate'] = sign_leaf(
                server.ca_key, server.ca_cert, csr.public_key(), order['domains'],
                days=server.validity_days)
            order['status'] = 'valid'
            self.send_response(200)
            self.write_response(self.order_response(number))
        elif kind == 'cert':
            self.send_response(200)
            self.write_response(
                server.orders[number]['certificate'],
                content_type='application/pem-certificate-chain')
        else:
            raise ValueError("POST %s" % self.path)

    def log_request(self, code='-', size='-'):
        return


class CPanelRequestHandler(http.server.BaseHTTPRequestHandler):
    """Login and ``SSL::install_ssl`` of a cPanel account."""

    def form(self):
        data = self.rfile.read(int(self.headers['Content-Length']))
        return {k: v[-1] for k, v in parse_qs(data.decode('utf-8')).items()}

    def write_response(self, response, content_type='application/json'):
        if isinstance(response, str):
            body = response.encode('utf-8')
        else:
            body = json.dumps(response).encode('utf-8')
        self.send_header('Content-Type', content_type)
        self.send_header('Content-Length', str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def authorized(self, prefix):
        server = self.server
        token = "cpanel %s:%s" % (server.username, server.api_token)
        if self.headers.get('Authorization') == token:
            return True
        return prefix == '/cpsess0001' and server.session_valid

    def do_POST(self):
        server = self.server
        url = urlsplit(self.path)
        form = self.form()
        if url.path == '/login/':
            server.logins += 1
            if form.get('user') == server.username and form.get('pass') == server.password:
                server.session_valid = True
                self.send_response(200)
                self.send_header('Set-Cookie', 'cpsession=abc; path=/')
                self.write_response(dict(
                    status=1, security_token='/cpsess0001',
                    redirect='/cpsess0001/frontend/jupiter/index.html'))
            else:
                self.send_response(401)
                self.write_response(dict(status=0, message='invalid_login'))
            return
        suffix = '/execute/SSL/install_ssl'
        if not url.path.endswith(suffix):
            self.send_response(404)
            self.write_response('not found', content_type='text/html')
            return
        if not self.authorized(url.path[:-len(suffix)]):
            self.send_response(401)
            self.write_response('Access denied', content_type='text/html')
            return
        if server.mode == 'expire_once' and not server.expired:
            server.expired = True
            server.session_valid = False
            self.send_response(401)
            self.write_response('Session expired', content_type='text/html')
            return
        if server.mode == 'down':
            self.send_response(500)
            self.write_response('Internal Server Error', content_type='text/html')
            return
        if server.mode == 'refuse':
            self.send_response(200)
            self.write_response(dict(
                status=0, data=None, messages=None, metadata={},
                errors=["The certificate could not be installed on the domain."]))
            return
        server.installs.append(form)
        self.send_response(200)
        self.write_response(dict(
            status=1, errors=None, metadata={},
            messages=["The SSL certificate is now installed onto the domain “%s”." % form.get('domain')],
            data=dict(domain=form.get('domain'), action='install')))

    def log_request(self, code='-', size='-'):
        return


def wait_for_http(method, url, timeout=60):
    session = requests.Session()
    while timeout > 0:
        try:
            getattr(session, method.lower())(url, timeout=1)
        except requests.ConnectionError:
            time.sleep(1)
            timeout -= 1
        else:
            return
    raise RuntimeError(
        f"The request {method} {url} didn't become accessible")


def run_server(server, check):
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    wait_for_http(check[0], "http://%s:%s%s" % (server.socket.getsockname()[:2] + (check[1],)))
    return thread


@pytest.fixture
def web_root(tmp_path):
    path = tmp_path.joinpath('www')
    path.mkdir()
    return path


@pytest.fixture
def cert_dir(tmp_path):
    return tmp_path.joinpath('certs')


@pytest.fixture(scope='session')
def fake_ca():
    return make_ca()


@pytest.fixture
def server(web_root, fake_ca):
    address = ('127.0.0.1', 0)
    server = http.server.ThreadingHTTPServer(address, HTTPRequestHandler)
    server.ca_key, server.ca_cert = fake_ca
    server.web_root = web_root
    server.accounts = {}
    server.kids = {}
    server.contacts = []
    server.orders = {}
    server.authzs = {}
    server.requests = []
    server.validations = []
    server.fail_domains = set()
    server.pending_polls = 1
    server.bad_nonces = 0
    server.nonces = 0
    server.validity_days = 90
    thread = run_server(server, ('HEAD', '/newNonce'))
    del server.requests[:]
    yield server
    server.shutdown()
    thread.join()


@pytest.fixture
def ca(server):
    return "http://%s:%s" % server.socket.getsockname()[:2]


@pytest.fixture
def cpanel_server():
    address = ('127.0.0.1', 0)
    server = http.server.ThreadingHTTPServer(address, CPanelRequestHandler)
    server.username = 'user'
    server.password = 'secret'
    server.api_token = 'APITOKEN'
    server.session_valid = False
    server.mode = 'ok'
    server.expired = False
    server.logins = 0
    server.installs = []
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server
    server.shutdown()
    thread.join()


@pytest.fixture
def cpanel(cpanel_server):
    return "http://%s:%s" % cpanel_server.socket.getsockname()[:2]


@pytest.fixture(autouse=True)
def genkey(monkeypatch):
    from panelcert import keystore
    genrsakey = keystore.genrsakey

    def genkey_small(keylen=2048):
        return genrsakey(keylen=1024)

    monkeypatch.setattr("panelcert.keystore.genrsakey", genkey_small)
    return genkey_small


@pytest.fixture
def make_config(tmp_path, web_root, cert_dir, ca, cpanel):
    from panelcert.config import Config

    def make_config(**kw):
        values = dict(
            domain='example.org',
            email='admin@example.org',
            web_root=web_root,
            cert_dir=cert_dir,
            cpanel_url=cpanel,
            cpanel_username='user',
            cpanel_password='secret',
            directory_url=ca + '/directory',
            poll_interval=0,
            poll_timeout=5,
            acme_retries=0,
            trigger_token='sesame')
        values.update(kw)
        return Config(**values)

    return make_config


@pytest.fixture
def make_cert(fake_ca):
    """Returns PEM text of a leaf plus chain valid for ``days`` more days."""
    ca_key, ca_cert = fake_ca

    def make_cert(days, names=('example.org',)):
        key = ec.generate_private_key(ec.SECP256R1())
        return sign_leaf(ca_key, ca_cert, key.public_key(), list(names), days=days)

    return make_cert


@pytest.fixture
def store_cert(cert_dir, make_cert):
    def store_cert(days, domain='example.org'):
        path = cert_dir.joinpath(domain)
        path.mkdir(parents=True, exist_ok=True)
        pem = make_cert(days, names=(domain,))
        leaf, chain = pem.split('-----END CERTIFICATE-----\n', 1)
        path.joinpath('certificate.crt').write_text(leaf + '-----END CERTIFICATE-----\n')
        path.joinpath('chain.crt').write_text(chain)
        return path

    return store_cert
