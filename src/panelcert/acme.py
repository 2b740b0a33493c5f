from . import audit
from .acmesession import b64
from .certs import bundle_from_chain
from .challenges import ChallengeRecord
from .errors import AcmeError, PanelcertError
from contextlib import contextmanager
import click
import dataclasses
import enum
import time


ACCOUNT_DOES_NOT_EXIST = 'urn:ietf:params:acme:error:accountDoesNotExist'
PENDING = frozenset(['pending', 'processing'])


class State(enum.Enum):
    START = 'start'
    ACCOUNT_READY = 'account-ready'
    ORDER_CREATED = 'order-created'
    AUTHORIZATIONS_PENDING = 'authorizations-pending'
    CHALLENGES_SATISFIED = 'challenges-satisfied'
    FINALIZING = 'finalizing'
    CERTIFICATE_READY = 'certificate-ready'
    FAILED = 'failed'


@dataclasses.dataclass
class Order:
    url: str
    status: str
    identifiers: list
    authorizations: list
    finalize: str
    certificate: str = None

    @classmethod
    def from_response(cls, url, data):
        return cls(
            url=url,
            status=data['status'],
            identifiers=[x['value'] for x in data.get('identifiers', [])],
            authorizations=list(data.get('authorizations', [])),
            finalize=data.get('finalize'),
            certificate=data.get('certificate'))

    def update(self, data):
        self.status = data['status']
        self.certificate = data.get('certificate', self.certificate)
        self.finalize = data.get('finalize', self.finalize)


class ACME:
    """Drives one certificate order through the ACME state machine.

    A machine is used for a single order.  Once in ``FAILED`` it never
    moves again; CA rejections aren't retried.
    """

    def __init__(self, session, poll_interval=2.0, poll_timeout=120.0,
                 deadline=None, sleep=time.sleep, clock=time.monotonic):
        self.session = session
        self.poll_interval = poll_interval
        self.poll_timeout = poll_timeout
        self.deadline = deadline
        self.sleep = sleep
        self.clock = clock
        self.state = State.START
        self.failure = None
        self.domain = None

    def _transition(self, state, **info):
        if self.state is State.FAILED:
            raise AcmeError(
                "Order already failed: %s" % self.failure,
                domain=self.domain, stage=state.value)
        self.state = state
        audit.event('order_state', domain=self.domain, state=state.value, **info)

    def _fail(self, error):
        if self.state is State.FAILED:
            return
        if isinstance(error, PanelcertError):
            if error.domain is None:
                error.domain = self.domain
            if error.stage is None:
                error.stage = self.state.value
        self.failure = str(error)
        audit.error(
            'order_state', domain=self.domain, state=State.FAILED.value,
            reached=self.state.value, reason=self.failure)
        self.state = State.FAILED

    @contextmanager
    def _step(self):
        if self.state is State.FAILED:
            raise AcmeError(
                "Order already failed: %s" % self.failure,
                domain=self.domain, stage=State.FAILED.value)
        try:
            yield
        except (KeyError, TypeError, ValueError) as e:
            error = AcmeError(
                "Unexpected response from CA", stage=self.state.value, cause=e)
            self._fail(error)
            raise error from e
        except Exception as e:
            self._fail(e)
            raise

    def key_authorization(self, token):
        return "{}.{}".format(token, self.session.thumbprint)

    def ensure_account(self, email):
        if self.session.kid is not None:
            return self.session.kid
        with self._step():
            directory = self.session.directory
            try:
                response = self.session.post_signed(
                    directory['newAccount'], dict(onlyReturnExisting=True))
                click.echo(click.style("Already registered.", fg='green'))
            except AcmeError as e:
                if e.problem.get('type') != ACCOUNT_DOES_NOT_EXIST:
                    raise
                response = self.session.post_signed(
                    directory['newAccount'], dict(
                        termsOfServiceAgreed=True,
                        contact=["mailto:" + email]))
                click.echo(click.style("Registered new account.", fg='green'))
                audit.event('account_registered', email=email)
            uri = response.headers.get('Location')
            if not uri:
                raise AcmeError(
                    "CA didn't return an account URL", stage='account')
            click.echo("Account URI: %s" % uri)
            self.session.kid = uri
            if self.state is State.START:
                self._transition(State.ACCOUNT_READY, account=uri)
        return uri

    def place_order(self, domains):
        self.domain = domains[0]
        with self._step():
            if self.state is not State.ACCOUNT_READY:
                raise AcmeError(
                    "Can't place an order in state %s" % self.state.value)
            response = self.session.post_signed(
                self.session.directory['newOrder'],
                dict(identifiers=[dict(type='dns', value=x) for x in domains]))
            order = Order.from_response(response.headers.get('Location'), response.json())
            if not order.url:
                raise AcmeError("CA didn't return an order URL", stage='order')
            click.echo("Order URI: %s" % order.url)
            self._transition(
                State.ORDER_CREATED, order=order.url, status=order.status)
            if order.status == 'invalid':
                raise AcmeError("CA created the order as invalid", stage='order')
            self._transition(
                State.AUTHORIZATIONS_PENDING,
                authorizations=len(order.authorizations))
        return order

    def _poll(self, uri, what):
        started = self.clock()
        while True:
            data = self.session.post_as_get(uri).json()
            if data.get('status') not in PENDING:
                return data
            elapsed = self.clock() - started
            if elapsed + self.poll_interval > self.poll_timeout:
                raise AcmeError(
                    "Timed out after %ss waiting for %s %s" % (
                        int(elapsed), what, uri),
                    stage='poll')
            if self.deadline is not None and (
                    self.deadline.expired
                    or self.deadline.remaining() < self.poll_interval):
                raise AcmeError(
                    "Deadline reached waiting for %s %s" % (what, uri),
                    stage='poll')
            click.echo('Waiting for %s ...' % what)
            self.sleep(self.poll_interval)

    def satisfy_authorization(self, authorization, responder):
        with self._step():
            authz = self.session.post_as_get(authorization).json()
            domain = authz['identifier']['value']
            if authz['status'] == 'valid':
                click.echo(click.style(
                    "Authorization for %s already valid." % domain, fg="green"))
                return authz
            if authz['status'] != 'pending':
                raise AcmeError(
                    "Authorization for %s is %s" % (domain, authz['status']),
                    domain=domain, stage='authorization')
            challenges = [
                x for x in authz['challenges']
                if x['type'] == responder.challenge_type]
            if not challenges:
                raise AcmeError(
                    "CA offers no '%s' challenge for %s" % (
                        responder.challenge_type, domain),
                    domain=domain, stage='authorization')
            challenge = challenges[0]
            click.echo(click.style(
                "Trying challenge type '%s' for %s." % (challenge['type'], domain),
                fg="green"))
            record = ChallengeRecord(
                token=challenge['token'],
                proof=self.key_authorization(challenge['token']),
                domain=domain)
            handle = responder.publish(record)
            try:
                self.session.post_signed(challenge['url'], {})
                authz = self._poll(authorization, 'authorization')
            finally:
                responder.retract(handle)
            if authz['status'] != 'valid':
                problem = {}
                for item in authz.get('challenges', []):
                    if item.get('error'):
                        problem = item['error']
                        break
                click.echo(click.style("Challenge invalid.", fg="yellow"))
                raise AcmeError(
                    "Authorization for %s is %s" % (domain, authz['status']),
                    problem=problem, domain=domain, stage='authorization')
            click.echo(click.style("Challenge valid.", fg="green"))
            audit.event('authorization_valid', domain=domain)
        return authz

    def satisfy_all(self, order, responder):
        for authorization in order.authorizations:
            self.satisfy_authorization(authorization, responder)
        with self._step():
            self._transition(State.CHALLENGES_SATISFIED, order=order.url)

    def finalize(self, order, csr, key_path=None, key_pem=None):
        with self._step():
            if self.state is not State.CHALLENGES_SATISFIED:
                raise AcmeError(
                    "Can't finalize an order in state %s" % self.state.value)
            self._transition(State.FINALIZING, order=order.url)
            order.update(self._poll(order.url, 'order'))
            if order.status == 'ready':
                response = self.session.post_signed(
                    order.finalize, dict(csr=b64(csr)))
                order.update(response.json())
            if order.status in PENDING:
                order.update(self._poll(order.url, 'certificate'))
            if order.status != 'valid' or not order.certificate:
                raise AcmeError(
                    "Order is %s, no certificate issued" % order.status,
                    problem=order_error(order, self.session), stage='finalize')
            response = self.session.post_as_get(order.certificate)
            try:
                bundle = bundle_from_chain(
                    response.text, key_path=key_path, key_pem=key_pem)
            except ValueError as e:
                raise AcmeError(
                    "CA returned no certificate at %s" % order.certificate,
                    stage='download', cause=e)
            self._transition(
                State.CERTIFICATE_READY, certificate=order.certificate,
                chain_length=len(bundle.chain_pems),
                not_after=bundle.not_after.isoformat() if bundle.not_after else None)
        return bundle

    def issue(self, domains, email, csr, responder, key_path=None, key_pem=None):
        """Runs the whole sequence and returns the CertificateBundle."""
        self.ensure_account(email)
        order = self.place_order(domains)
        self.satisfy_all(order, responder)
        return self.finalize(order, csr, key_path=key_path, key_pem=key_pem)


def order_error(order, session):
    try:
        return session.post_as_get(order.url).json().get('error') or {}
    except (AcmeError, ValueError):
        return {}
