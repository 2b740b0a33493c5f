class PanelcertError(Exception):
    """Base class for errors that abort or degrade a renewal run.

    Carries enough context (domain, stage reached, underlying cause) to
    diagnose a failure from the audit log alone.
    """

    exit_code = 3

    def __init__(self, message, domain=None, stage=None, cause=None):
        super().__init__(message)
        self.message = message
        self.domain = domain
        self.stage = stage
        self.cause = cause

    def context(self):
        info = dict(error=type(self).__name__, message=self.message)
        if self.domain is not None:
            info['domain'] = self.domain
        if self.stage is not None:
            info['stage'] = self.stage
        if self.cause is not None:
            info['cause'] = repr(self.cause)
        return info

    def __str__(self):
        parts = []
        if self.domain is not None:
            parts.append("domain=%s" % self.domain)
        if self.stage is not None:
            parts.append("stage=%s" % self.stage)
        if self.cause is not None:
            parts.append("cause=%r" % self.cause)
        if parts:
            return "%s (%s)" % (self.message, ', '.join(parts))
        return self.message


class ConfigError(PanelcertError):
    pass


class StorageError(PanelcertError):
    pass


class AcmeError(PanelcertError):
    def __init__(self, message, problem=None, **kw):
        super().__init__(message, **kw)
        self.problem = problem or {}

    def context(self):
        info = super().context()
        if self.problem:
            info['problem'] = self.problem
        return info

    def __str__(self):
        text = super().__str__()
        detail = self.problem.get('detail')
        if detail:
            text = "%s: %s" % (text, detail)
        problem_type = self.problem.get('type')
        if problem_type:
            text = "%s [%s]" % (text, problem_type)
        return text


class ChallengeError(PanelcertError):
    pass


class InstallError(PanelcertError):
    pass


class RunInProgress(PanelcertError):
    exit_code = 4
