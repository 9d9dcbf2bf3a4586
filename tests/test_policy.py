import pytest

from otrpipe.contacts import ContactStore
from otrpipe.errors import AuthorizationRejected, ConfigConflict
from otrpipe.policy import AuthorizationConfig, AuthorizationPolicy, Verdict, check_config, decide

from conftest import ALICE, BOB


class CountingStore(ContactStore):
    def __init__(self, path):
        super().__init__(path)
        self.saves = 0

    def save(self, book):
        self.saves += 1
        super().save(book)


class TestDecide:
    def test_default_known(self, contacts):
        d = decide(ALICE, contacts, AuthorizationConfig())
        assert d.verdict is Verdict.ALLOW
        assert d.name == "alice"

    def test_default_unknown(self, contacts):
        d = decide(BOB, contacts, AuthorizationConfig())
        assert d.verdict is Verdict.REJECT
        assert "unknown" in d.reason

    def test_anyone_unknown(self, contacts):
        d = decide(BOB, contacts, AuthorizationConfig(anyone=True))
        assert d.verdict is Verdict.ALLOW
        assert d.name is None

    def test_anyone_known_names_the_contact(self, contacts):
        assert decide(ALICE, contacts, AuthorizationConfig(anyone=True)).name == "alice"

    def test_remember_unknown(self, contacts):
        d = decide(BOB, contacts, AuthorizationConfig(remember="bob"))
        assert d.verdict is Verdict.ALLOW_AND_REMEMBER
        assert d.name == "bob"

    def test_remember_known_warns(self, contacts):
        d = decide(ALICE, contacts, AuthorizationConfig(remember="bob"))
        assert d.verdict is Verdict.ALLOW
        assert "known as 'alice'" in d.warning

    def test_expect_match(self, contacts):
        assert decide(ALICE, contacts, AuthorizationConfig(expect="alice")).verdict is Verdict.ALLOW

    def test_expect_unknown(self, contacts):
        d = decide(BOB, contacts, AuthorizationConfig(expect="alice"))
        assert d.verdict is Verdict.REJECT

    def test_expect_other_contact(self, contacts):
        contacts.add("bob", BOB)
        d = decide(BOB, contacts, AuthorizationConfig(expect="alice"))
        assert d.verdict is Verdict.REJECT
        assert "the contact is 'bob'" in d.reason

    def test_decide_has_no_side_effects(self, contacts):
        decide(BOB, contacts, AuthorizationConfig(remember="bob"))
        assert "bob" not in contacts


class TestCheckConfig:
    @pytest.mark.parametrize("config, message", [
        (AuthorizationConfig(expect="alice", remember="x"), "mutually exclusive"),
        (AuthorizationConfig(anyone=True, expect="alice"), "mutually exclusive"),
        (AuthorizationConfig(expect="nobody"), "unknown contact 'nobody'"),
        (AuthorizationConfig(remember="alice"), "already known contact 'alice'"),
    ])
    def test_conflicts(self, contacts, config, message):
        with pytest.raises(ConfigConflict, match=message):
            check_config(config, contacts)

    @pytest.mark.parametrize("config", [
        AuthorizationConfig(),
        AuthorizationConfig(anyone=True),
        AuthorizationConfig(anyone=True, remember="bob"),
        AuthorizationConfig(expect="alice"),
    ])
    def test_valid(self, contacts, config):
        check_config(config, contacts)

    @pytest.mark.parametrize("name", ["bob smith", "", "tab\tname", " bob"])
    def test_remember_name_must_fit_the_contacts_file(self, contacts, name):
        with pytest.raises(ConfigConflict, match="Can't remember a contact as"):
            check_config(AuthorizationConfig(remember=name), contacts)

    def test_remember_self_when_our_key_has_a_name(self, contacts):
        # "self" isn't in the book when our own fingerprint is already a contact.
        contacts.set_self(ALICE)
        with pytest.raises(ConfigConflict, match="reserved"):
            check_config(AuthorizationConfig(remember="self"), contacts)

    def test_remember_implies_anyone(self):
        assert AuthorizationConfig(remember="bob").allows_anyone


class TestAuthorizationPolicy:
    def test_default_known_leaves_contacts_alone(self, contacts, tmp_path):
        store = CountingStore(tmp_path / "contacts")
        policy = AuthorizationPolicy(AuthorizationConfig(), contacts, store)
        assert policy.authorize(ALICE) == "alice"
        assert list(contacts.items()) == [("alice", ALICE)]
        assert store.saves == 0

    def test_known_contact_is_announced(self, contacts, capsys):
        policy = AuthorizationPolicy(AuthorizationConfig(), contacts)
        assert policy.authorize(ALICE) == "alice"
        assert "The contact is 'alice'." in capsys.readouterr().err

    def test_reject_raises(self, contacts):
        policy = AuthorizationPolicy(AuthorizationConfig(), contacts)
        with pytest.raises(AuthorizationRejected, match="unknown"):
            policy.authorize(BOB)

    def test_anyone_leaves_contacts_alone(self, contacts, tmp_path):
        store = CountingStore(tmp_path / "contacts")
        policy = AuthorizationPolicy(AuthorizationConfig(anyone=True), contacts, store)
        assert policy.authorize(BOB) is None
        assert list(contacts.items()) == [("alice", ALICE)]
        assert store.saves == 0

    def test_remember_persists_once(self, contacts, tmp_path, capsys):
        store = CountingStore(tmp_path / "contacts")
        policy = AuthorizationPolicy(AuthorizationConfig(remember="bob"), contacts, store)
        assert policy.authorize(BOB) == "bob"
        assert contacts.fingerprint_for("bob") == BOB
        assert store.saves == 1
        assert ContactStore(store.path).load().name_for(BOB) == "bob"
        assert "Remembering contact 'bob'." in capsys.readouterr().err

    def test_remember_already_known(self, contacts, tmp_path, capsys):
        store = CountingStore(tmp_path / "contacts")
        policy = AuthorizationPolicy(AuthorizationConfig(remember="bob"), contacts, store)
        assert policy.authorize(ALICE) == "alice"
        assert store.saves == 0
        assert "Warning: Expected an unknown contact" in capsys.readouterr().err
