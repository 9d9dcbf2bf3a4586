import enum
import sys
from dataclasses import dataclass
from typing import Optional

from .contacts import SELF_NAME, ContactBook, ContactStore, valid_name
from .errors import AuthorizationRejected, ConfigConflict

"""
policy.py - who we are willing to talk to.

Modes (picked from the -anyone / -remember / -expect flags):
- default:        only known contacts.
- anyone:         everybody; known contacts are named for information.
- expect(NAME):   only the contact called NAME.
- remember(NAME): everybody (implies anyone); an unknown peer is saved as NAME.

decide() is pure. AuthorizationPolicy.authorize() applies the decision:
prints the notices, persists a remembered contact, or raises.
"""


class Verdict(enum.Enum):
    ALLOW = "allow"
    ALLOW_AND_REMEMBER = "allow-and-remember"
    REJECT = "reject"


@dataclass(frozen=True)
class AuthorizationConfig:
    """The authorization flags exactly as the user gave them."""
    anyone: bool = False
    remember: Optional[str] = None
    expect: Optional[str] = None

    @property
    def allows_anyone(self) -> bool:
        return self.anyone or bool(self.remember)


@dataclass(frozen=True)
class Decision:
    verdict: Verdict
    name: Optional[str] = None      # known name, or the name to remember
    reason: Optional[str] = None    # why we reject
    warning: Optional[str] = None   # allowed, but something looked off

    @property
    def allowed(self) -> bool:
        return self.verdict is not Verdict.REJECT


def check_config(config: AuthorizationConfig, contacts: ContactBook) -> None:
    """
    Validate flags against the contact book. Runs before any network I/O.

    Raises:
        ConfigConflict: on mutually exclusive flags, a -remember name the
        contacts file can't hold, or a name that is (or isn't) known when
        it must not (or must) be.
    """
    if config.expect and config.remember:
        raise ConfigConflict("The -expect and -remember options are mutually exclusive.")
    if config.anyone and config.expect:
        raise ConfigConflict("The -expect and -anyone options are mutually exclusive.")
    if config.remember is not None and not valid_name(config.remember):
        raise ConfigConflict(
            f"Can't remember a contact as '{config.remember}'.  Names can't be empty or contain whitespace."
        )
    if config.expect and config.expect not in contacts:
        raise ConfigConflict(f"Can't expect unknown contact '{config.expect}'.")
    if config.remember and config.remember in contacts:
        raise ConfigConflict(f"Can't re-remember an already known contact '{config.remember}'.")
    if config.remember == SELF_NAME:
        raise ConfigConflict(f"The contact name '{SELF_NAME}' is reserved for your own key.")


def decide(fingerprint: bytes, contacts: ContactBook, config: AuthorizationConfig) -> Decision:
    """Map (peer fingerprint, contacts, flags) to a verdict. No side effects."""
    name = contacts.name_for(fingerprint)

    if config.expect:
        if name is None:
            return Decision(Verdict.REJECT,
                            reason=f"Expected contact '{config.expect}', but the contact is unknown.")
        if name != config.expect:
            return Decision(Verdict.REJECT, name=name,
                            reason=f"Expected contact '{config.expect}', but the contact is '{name}'.")
        return Decision(Verdict.ALLOW, name=name)

    if name is None:
        if config.remember:
            return Decision(Verdict.ALLOW_AND_REMEMBER, name=config.remember)
        if config.anyone:
            return Decision(Verdict.ALLOW)
        return Decision(Verdict.REJECT,
                        reason="The contact is unknown.  Use -anyone or -remember to talk to unknown contacts.")

    if config.remember:
        return Decision(Verdict.ALLOW, name=name,
                        warning=f"Warning: Expected an unknown contact, but the contact is known as '{name}'.")
    return Decision(Verdict.ALLOW, name=name)


class AuthorizationPolicy:
    """
    Binds flags, contact book and store together for one session.

    authorize() is called exactly once, when the channel first becomes
    encrypted. It is the only code that mutates the contact book.
    """

    def __init__(self, config: AuthorizationConfig, contacts: ContactBook,
                 store: Optional[ContactStore] = None) -> None:
        self.config = config
        self.contacts = contacts
        self.store = store

    def check(self) -> None:
        check_config(self.config, self.contacts)

    def authorize(self, fingerprint: bytes) -> Optional[str]:
        """
        Apply the decision for `fingerprint` and return the peer's contact
        name (None for an unknown peer talked to under -anyone).

        Raises:
            AuthorizationRejected: the policy refuses the peer.
        """
        decision = decide(fingerprint, self.contacts, self.config)
        if not decision.allowed:
            raise AuthorizationRejected(decision.reason)

        if decision.warning:
            print(decision.warning, file=sys.stderr)

        if decision.verdict is Verdict.ALLOW_AND_REMEMBER:
            print(f"Remembering contact '{decision.name}'.", file=sys.stderr)
            self.contacts.add(decision.name, fingerprint)
            if self.store is not None:
                self.store.save(self.contacts)
        elif decision.name and not self.config.remember:
            print(f"The contact is '{decision.name}'.", file=sys.stderr)

        return decision.name
