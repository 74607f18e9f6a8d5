import pytest

from keyshell.database import make_reference
from keyshell.secrets_prompt import SecretsPromptPlugin, user_action
from keyshell.secrets_service import AuthDecision, Client

CLIENT = Client("firefox", 4242)
NO_CONFIRM = {"confirm_delete_item": False}


@pytest.fixture
def three_entries(database):
    return [
        database.add_entry("github", username="octocat", password="hunter2"),
        database.add_entry("mail", username="me@example.com", password="letmein"),
        database.add_entry("bank", username="me", password="123456"),
    ]


@pytest.mark.parametrize("answer", ["Y", "y", " yes ", "YES"])
def test_user_action_matches_aliases_case_insensitively(make_input, answer):
    choice = user_action(make_input(answer + "\n"), "Sure? {actions}", ["[Y]es", "[N]o"], ["y|yes", "n|no"])

    assert choice == 0


def test_user_action_reprompts_on_unknown_answer(make_input, capsys):
    choice = user_action(make_input("maybe\n\nno\n"), "Sure? {actions}", ["[Y]es", "[N]o"], ["y|yes", "n|no"])

    assert choice == 1
    out = capsys.readouterr().out
    assert out.startswith("Sure? [Y]es | [N]o\n")
    assert "Unknown response: maybe. Please provide: [Y]es | [N]o" in out
    assert out.count("Unknown response") == 2


def test_user_action_is_cancelled_at_end_of_input(make_input):
    assert user_action(make_input("what\n"), "Sure? {actions}", ["[Y]es"], ["y|yes"]) is None


def test_user_action_leaves_braces_in_message_alone(make_input, capsys):
    user_action(make_input("y\n"), 'Allow "{weird}"? {actions}', ["[Y]es"], ["y|yes"])

    assert 'Allow "{weird}"? [Y]es' in capsys.readouterr().out


def test_unlock_deny_all_remembered(fake_reader, three_entries):
    reader = fake_reader("d\ny\n")
    plugin = SecretsPromptPlugin(reader)

    accepted, decisions, for_future = plugin.request_entries_unlock(CLIENT, "db", three_entries)

    assert accepted
    assert decisions == {entry: AuthDecision.DENIED for entry in three_entries}
    assert for_future == AuthDecision.DENIED
    assert (reader.pause_calls, reader.restore_calls) == (1, 1)
    assert not reader.paused


def test_unlock_allow_selected_once(fake_reader, three_entries):
    plugin = SecretsPromptPlugin(fake_reader("s\ny\nn\ny\nn\n"))

    accepted, decisions, for_future = plugin.request_entries_unlock(CLIENT, "db", three_entries)

    assert accepted
    assert [decisions[e] for e in three_entries] == [
        AuthDecision.ALLOWED_ONCE,
        AuthDecision.UNDECIDED,
        AuthDecision.ALLOWED_ONCE,
    ]
    assert for_future == AuthDecision.UNDECIDED


def test_unlock_allow_selected_remembered_keeps_undecided(fake_reader, three_entries):
    plugin = SecretsPromptPlugin(fake_reader("selected\nn\ny\ny\nyes\n"))

    accepted, decisions, for_future = plugin.request_entries_unlock(CLIENT, "db", three_entries)

    assert accepted
    assert [decisions[e] for e in three_entries] == [
        AuthDecision.UNDECIDED,
        AuthDecision.ALLOWED,
        AuthDecision.ALLOWED,
    ]
    assert for_future == AuthDecision.UNDECIDED


def test_unlock_allow_all_remembered(fake_reader, three_entries):
    plugin = SecretsPromptPlugin(fake_reader("Allow All\ny\n"))

    accepted, decisions, for_future = plugin.request_entries_unlock(CLIENT, "db", three_entries)

    assert accepted
    assert set(decisions.values()) == {AuthDecision.ALLOWED}
    assert for_future == AuthDecision.ALLOWED


def test_unlock_allow_all_once(fake_reader, three_entries, capsys):
    plugin = SecretsPromptPlugin(fake_reader("a\nn\n"))

    accepted, decisions, for_future = plugin.request_entries_unlock(CLIENT, "db", three_entries)

    assert accepted
    assert set(decisions.values()) == {AuthDecision.ALLOWED_ONCE}
    assert for_future == AuthDecision.UNDECIDED
    out = capsys.readouterr().out
    assert "firefox (PID: 4242) is requesting access to the following entries:" in out
    assert "2. mail (username: me@example.com)" in out
    assert "WARNING: this will concern ALL entries" in out


@pytest.mark.parametrize("answers", ["", "s\ny\n", "a\n", "d\nwhat\n"])
def test_unlock_cancelled_records_nothing(fake_reader, three_entries, answers):
    reader = fake_reader(answers)
    plugin = SecretsPromptPlugin(reader)

    accepted, decisions, for_future = plugin.request_entries_unlock(CLIENT, "db", three_entries)

    assert not accepted
    assert decisions == {}
    assert for_future == AuthDecision.UNDECIDED
    assert not reader.paused


class FakeEntry:
    def __init__(self, title, database, log):
        self.title = title
        self.database = database
        self.log = log

    def resolved(self, field):
        return getattr(self, field)

    def replace_references_with_values(self, other):
        self.log.append(("overwrite", self.title, other.title))

    def delete(self):
        self.log.append(("delete", self.title))

    def move_to_recycle_bin(self):
        self.log.append(("recycle", self.title))


class FakeDatabase:
    def __init__(self):
        self.references = {}

    def references_to(self, entry):
        return self.references.get(entry.title, [])


def test_overwrite_rewrites_references_before_deleting(fake_reader):
    log = []
    db = FakeDatabase()
    target = FakeEntry("A", db, log)
    db.references["A"] = [FakeEntry("B", db, log)]
    plugin = SecretsPromptPlugin(fake_reader("o\n"), NO_CONFIRM)

    removed = plugin.request_entries_remove(CLIENT, "db", [target], permanent=True)

    assert removed == 1
    assert log == [("overwrite", "B", "A"), ("delete", "A")]


def test_overwrite_copies_value_into_referencing_entry(fake_reader, database, capsys):
    target = database.add_entry("A", password="s3cret")
    referrer = database.add_entry("B", password=make_reference("P", target))
    plugin = SecretsPromptPlugin(fake_reader("overwrite\n"), NO_CONFIRM)

    removed = plugin.request_entries_remove(CLIENT, "db", [target], permanent=True)

    assert removed == 1
    assert database.get_entry(target.uuid) is None
    assert database.get_entry(referrer.uuid).password == "s3cret"
    assert 'Entry "A" has 1 reference(s).' in capsys.readouterr().out


def test_delete_anyway_leaves_references_dangling(fake_reader, database):
    target = database.add_entry("A", password="s3cret")
    reference = make_reference("P", target)
    referrer = database.add_entry("B", password=reference)
    plugin = SecretsPromptPlugin(fake_reader("d\n"), NO_CONFIRM)

    assert plugin.request_entries_remove(CLIENT, "db", [target], permanent=True) == 1
    assert database.get_entry(referrer.uuid).password == reference


def test_cancel_mid_list_keeps_earlier_removals(fake_reader, database):
    first = database.add_entry("first", password="one")
    second = database.add_entry("second", password="two")
    third = database.add_entry("third", password="three")
    database.add_entry("outsider", password=make_reference("P", second))
    plugin = SecretsPromptPlugin(fake_reader(""), NO_CONFIRM)

    removed = plugin.request_entries_remove(CLIENT, "db", [first, second, third], permanent=True)

    assert removed == 1
    assert database.get_entry(first.uuid) is None
    assert database.get_entry(second.uuid) is not None
    assert database.get_entry(third.uuid) is not None


def test_skip_excludes_entry(fake_reader, database):
    first = database.add_entry("first")
    second = database.add_entry("second")
    database.add_entry("outsider", username=make_reference("U", first))
    plugin = SecretsPromptPlugin(fake_reader("s\n"), NO_CONFIRM)

    removed = plugin.request_entries_remove(CLIENT, "db", [first, second], permanent=True)

    assert removed == 1
    assert database.get_entry(first.uuid) is not None
    assert database.get_entry(second.uuid) is None


def test_references_inside_the_batch_need_no_answer(fake_reader, database):
    first = database.add_entry("first", password="one")
    second = database.add_entry("second", password=make_reference("P", first))
    plugin = SecretsPromptPlugin(fake_reader(""), NO_CONFIRM)

    assert plugin.request_entries_remove(CLIENT, "db", [first, second], permanent=True) == 2
    assert database.entries(include_recycled=True) == []


def test_non_permanent_removal_recycles_without_reference_check(fake_reader, database):
    target = database.add_entry("A", password="s3cret")
    database.add_entry("B", password=make_reference("P", target))
    plugin = SecretsPromptPlugin(fake_reader(""), NO_CONFIRM)

    assert plugin.request_entries_remove(CLIENT, "db", [target], permanent=False) == 1
    assert database.get_entry(target.uuid).in_recycle_bin


def test_confirmation_denied_removes_nothing(fake_reader, database, capsys):
    target = database.add_entry("A")
    reader = fake_reader("deny\n")
    plugin = SecretsPromptPlugin(reader, {"confirm_delete_item": True})

    assert plugin.request_entries_remove(CLIENT, "Personal", [target], permanent=True) == 0
    assert database.get_entry(target.uuid) is not None
    assert not reader.paused
    out = capsys.readouterr().out
    assert 'firefox (PID: 4242) is requesting permanent removal of the following entries from database "Personal":' in out
    assert "\t1. A" in out


def test_confirmation_cancelled_removes_nothing(fake_reader, database):
    target = database.add_entry("A")
    plugin = SecretsPromptPlugin(fake_reader(""))

    assert plugin.request_entries_remove(CLIENT, "db", [target], permanent=False) == 0
    assert not database.get_entry(target.uuid).in_recycle_bin


def test_confirmation_allowed_then_removed(fake_reader, database):
    target = database.add_entry("A")
    plugin = SecretsPromptPlugin(fake_reader("a\n"))

    assert plugin.request_entries_remove(CLIENT, "db", [target], permanent=False) == 1
    assert database.get_entry(target.uuid).in_recycle_bin


def test_empty_removal_request_does_not_prompt(fake_reader):
    reader = fake_reader("")
    plugin = SecretsPromptPlugin(reader)

    assert plugin.request_entries_remove(CLIENT, "db", [], permanent=True) == 0
    assert reader.pause_calls == 0
