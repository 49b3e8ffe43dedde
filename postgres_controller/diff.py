"""
Diff engine for database and user convergence

Compares the desired databases and users of a Postgres resource with the
ones recorded in its status and produces the statements that move the
database from one to the other. Everything here is pure; nothing touches
the network.
"""

import re
from dataclasses import dataclass, field
from typing import Iterable, List, Sequence

from postgres_controller.models import UserSpec

CONNECT_DIRECTIVE = re.compile(r"^\\(c|connect)(\s|$)")
PASSWORD_LITERAL = re.compile(r"(PASSWORD\s+)'(?:[^']|'')*'", re.IGNORECASE)


def quote_ident(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def quote_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def is_connect_directive(statement: str) -> bool:
    """True for psql-style connection directives such as ``\\c sales``"""
    return bool(CONNECT_DIRECTIVE.match(statement.strip()))


def redact(statement: str) -> str:
    """Mask password literals so statements can be logged"""
    return PASSWORD_LITERAL.sub(r"\1'******'", statement)


def canonicalize(commands: Iterable[str]) -> List[str]:
    """
    Normalize raw setup commands from the resource spec

    Args:
        commands: Statements as written by the resource author

    Returns:
        Non-empty statements, stripped, SQL ones terminated with ``;``
    """
    canonical = []
    for command in commands:
        command = (command or "").strip()
        if not command:
            continue
        if not is_connect_directive(command) and not command.endswith(";"):
            command += ";"
        canonical.append(command)
    return canonical


# ============================================================================
# DATABASES
# ============================================================================

def database_sets(desired: Sequence[str], current: Sequence[str]):
    """
    Split databases into the ones to create and the ones to drop

    Returns:
        Tuple of (to_create, to_drop), each in declaration order
    """
    current_set = set(current)
    desired_set = set(desired)
    to_create = _unique(d for d in desired if d not in current_set)
    to_drop = _unique(c for c in current if c not in desired_set)
    return to_create, to_drop


def get_database_commands(desired: Sequence[str], current: Sequence[str]):
    """Returns (create_commands, drop_commands)"""
    to_create, to_drop = database_sets(desired, current)
    create_cmds = [f"CREATE DATABASE {quote_ident(name)};" for name in to_create]
    drop_cmds = [f"DROP DATABASE {quote_ident(name)};" for name in to_drop]
    return create_cmds, drop_cmds


# ============================================================================
# USERS
# ============================================================================

def user_sets(desired: Sequence[UserSpec], current: Sequence[UserSpec]):
    """
    Match users by name and classify them

    Returns:
        Tuple of (to_create, to_drop, to_alter) lists of UserSpec; the alter
        list carries the desired spec
    """
    current_by_name = {u.username: u for u in current}
    desired_by_name = {u.username: u for u in desired}

    to_create, to_alter = [], []
    for user in desired_by_name.values():
        existing = current_by_name.get(user.username)
        if existing is None:
            to_create.append(user)
        elif existing.fingerprint() != user.fingerprint():
            to_alter.append(user)
    to_drop = [u for u in current_by_name.values() if u.username not in desired_by_name]
    return to_create, to_drop, to_alter


def _user_options(user: UserSpec) -> str:
    options = f" WITH PASSWORD {quote_literal(user.password)}"
    if user.attributes:
        options += " " + " ".join(user.attributes)
    return options


def get_user_commands(desired: Sequence[UserSpec], current: Sequence[UserSpec]):
    """Returns (create_commands, drop_commands, alter_commands)"""
    to_create, to_drop, to_alter = user_sets(desired, current)
    create_cmds = [f"CREATE USER {quote_ident(u.username)}{_user_options(u)};" for u in to_create]
    drop_cmds = [f"DROP USER {quote_ident(u.username)};" for u in to_drop]
    alter_cmds = [f"ALTER USER {quote_ident(u.username)}{_user_options(u)};" for u in to_alter]
    return create_cmds, drop_cmds, alter_cmds


# ============================================================================
# COMMAND LIST
# ============================================================================

@dataclass
class CommandPlan:
    """Ordered statements for one reconcile pass"""
    create_databases: List[str] = field(default_factory=list)
    drop_databases: List[str] = field(default_factory=list)
    create_users: List[str] = field(default_factory=list)
    drop_users: List[str] = field(default_factory=list)
    alter_users: List[str] = field(default_factory=list)

    @property
    def commands(self) -> List[str]:
        # Creations go first so nothing later in the pass names a missing object
        return (
            self.create_databases
            + self.drop_databases
            + self.create_users
            + self.drop_users
            + self.alter_users
        )

    def __bool__(self):
        return bool(self.commands)

    def __len__(self):
        return len(self.commands)


def plan(desired_databases: Sequence[str], current_databases: Sequence[str],
         desired_users: Sequence[UserSpec], current_users: Sequence[UserSpec]) -> CommandPlan:
    """Compute the full command plan for a (desired, current) pair"""
    create_db, drop_db = get_database_commands(desired_databases, current_databases)
    create_users, drop_users, alter_users = get_user_commands(desired_users, current_users)
    return CommandPlan(
        create_databases=create_db,
        drop_databases=drop_db,
        create_users=create_users,
        drop_users=drop_users,
        alter_users=alter_users,
    )


def _unique(items: Iterable[str]) -> List[str]:
    seen = set()
    result = []
    for item in items:
        if item not in seen:
            seen.add(item)
            result.append(item)
    return result
