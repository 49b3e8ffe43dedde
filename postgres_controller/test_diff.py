"""
Tests for the diff engine

Covers the database/user classification, statement ordering, the
convergence and idempotence properties, and the statement helpers.
"""

from postgres_controller.diff import (
    canonicalize,
    database_sets,
    get_database_commands,
    get_user_commands,
    is_connect_directive,
    plan,
    quote_ident,
    redact,
    user_sets,
)
from postgres_controller.models import UserSpec


def _apply_databases(desired, current):
    """Database state after the emitted creates and drops have run"""
    to_create, to_drop = database_sets(desired, current)
    return (set(current) - set(to_drop)) | set(to_create)


def _apply_users(desired, current):
    """User state after the emitted creates, drops and alters have run"""
    to_create, to_drop, to_alter = user_sets(desired, current)
    state = {u.username: u for u in current}
    for user in to_drop:
        del state[user.username]
    for user in to_create + to_alter:
        state[user.username] = user
    return list(state.values())


def test_database_diff_scenario():
    """desired {db1, db2}, current {db2, db3}"""
    print("🧪 Testing database diff...")

    to_create, to_drop = database_sets(["db1", "db2"], ["db2", "db3"])
    assert to_create == ["db1"], "db1 should be created"
    assert to_drop == ["db3"], "db3 should be dropped"

    create_cmds, drop_cmds = get_database_commands(["db1", "db2"], ["db2", "db3"])
    assert create_cmds == ['CREATE DATABASE "db1";']
    assert drop_cmds == ['DROP DATABASE "db3";']

    print("✅ Database diff tests passed!")


def test_user_diff_scenario():
    """desired [alice/pw1], current [alice/pw0, bob/pw2]"""
    print("\n🧪 Testing user diff...")

    desired = [UserSpec("alice", "pw1")]
    current = [UserSpec("alice", "pw0"), UserSpec("bob", "pw2")]

    to_create, to_drop, to_alter = user_sets(desired, current)
    assert to_create == [], "Nobody should be created"
    assert [u.username for u in to_drop] == ["bob"], "Bob should be dropped"
    assert [u.username for u in to_alter] == ["alice"], "Alice should be altered"

    create_cmds, drop_cmds, alter_cmds = get_user_commands(desired, current)
    assert create_cmds == []
    assert drop_cmds == ['DROP USER "bob";']
    assert alter_cmds == ['ALTER USER "alice" WITH PASSWORD \'pw1\';']

    print("✅ User diff tests passed!")


def test_user_attributes():
    current = [UserSpec("carol", "pw", ["CREATEDB", "LOGIN"])]

    _, _, to_alter = user_sets([UserSpec("carol", "pw", ["login", "createdb"])], current)
    assert to_alter == [], "Attribute order and case should not matter"

    _, _, alter_cmds = get_user_commands([UserSpec("carol", "pw", ["NOCREATEDB"])], current)
    assert alter_cmds == ['ALTER USER "carol" WITH PASSWORD \'pw\' NOCREATEDB;']

    create_cmds, _, _ = get_user_commands([UserSpec("dave", "pw", ["CONNECTION LIMIT 5"])], [])
    assert create_cmds == ['CREATE USER "dave" WITH PASSWORD \'pw\' CONNECTION LIMIT 5;']


def test_command_ordering():
    """Creations come before drops, alters come last"""
    command_plan = plan(
        ["new_db"], ["old_db"],
        [UserSpec("new_user", "a"), UserSpec("kept", "changed")],
        [UserSpec("old_user", "b"), UserSpec("kept", "original")],
    )
    assert command_plan.commands == [
        'CREATE DATABASE "new_db";',
        'DROP DATABASE "old_db";',
        'CREATE USER "new_user" WITH PASSWORD \'a\';',
        'DROP USER "old_user";',
        'ALTER USER "kept" WITH PASSWORD \'changed\';',
    ]
    assert len(command_plan) == 5
    assert command_plan


def test_convergence_and_idempotence():
    """Applying a plan reaches the desired state and a second diff is empty"""
    print("\n🧪 Testing convergence...")

    cases = [
        ([], []),
        (["a"], []),
        ([], ["a"]),
        (["a", "b"], ["b", "c"]),
        (["a", "b", "c"], ["c", "b", "a"]),
        (["x", "x", "y"], ["y", "z", "z"]),
    ]
    for desired, current in cases:
        to_create, to_drop = database_sets(desired, current)
        assert not set(to_create) & set(to_drop), f"create/drop overlap for {desired} vs {current}"

        after = _apply_databases(desired, current)
        assert after == set(desired), f"{desired} vs {current} converged to {after}"
        assert database_sets(desired, sorted(after)) == ([], []), "Second pass should be empty"

    user_cases = [
        ([UserSpec("a", "1")], []),
        ([], [UserSpec("a", "1")]),
        ([UserSpec("a", "1"), UserSpec("b", "2")], [UserSpec("b", "3"), UserSpec("c", "4")]),
    ]
    for desired, current in user_cases:
        after = _apply_users(desired, current)
        assert user_sets(desired, after) == ([], [], []), "Second pass should be empty"
        assert sorted(u.username for u in after) == sorted(u.username for u in desired)

    assert not plan(["a"], ["a"], [UserSpec("u", "p")], [UserSpec("u", "p")]), "Plan should be empty"

    print("✅ Convergence tests passed!")


def test_create_only_plan():
    """Against an empty baseline only creations are emitted"""
    command_plan = plan(["sales"], [], [], [])
    assert command_plan.commands == ['CREATE DATABASE "sales";']
    assert command_plan.drop_databases == []


def test_canonicalize():
    commands = canonicalize([
        "  create table t (a int)  ",
        "",
        None,
        "\\c sales",
        "insert into t values (1);",
    ])
    assert commands == [
        "create table t (a int);",
        "\\c sales",
        "insert into t values (1);",
    ]


def test_statement_helpers():
    assert is_connect_directive("\\c sales")
    assert is_connect_directive("  \\connect other  ")
    assert is_connect_directive("\\c")
    assert not is_connect_directive("\\copy t from stdin")
    assert not is_connect_directive("create database c;")

    assert quote_ident('we"ird') == '"we""ird"'
    assert redact("CREATE USER \"a\" WITH PASSWORD 'it''s secret' LOGIN;") == \
        "CREATE USER \"a\" WITH PASSWORD '******' LOGIN;"
    assert redact('DROP USER "a";') == 'DROP USER "a";'


def test_password_quoting():
    create_cmds, _, _ = get_user_commands([UserSpec("o'brien", "pa'ss")], [])
    assert create_cmds == ['CREATE USER "o\'brien" WITH PASSWORD \'pa\'\'ss\';']
