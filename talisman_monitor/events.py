from dataclasses import dataclass
from typing import Union


# Placeholder identities written by the BBS before a real user name is known
UNKNOWN_USER = "Unknown User"
NEW_USER = "New User"


@dataclass(frozen=True)
class Connect:
    node: int
    remote_addr: str


@dataclass(frozen=True)
class Login:
    node: int
    user: str


@dataclass(frozen=True)
class NewUserSignup:
    node: int


@dataclass(frozen=True)
class MenuChange:
    node: int
    user: str
    menu_path: str


@dataclass(frozen=True)
class GenericActivity:
    node: int
    user: str
    activity: str  # matched verb phrase, e.g. "running door"
    activity_label: str


@dataclass(frozen=True)
class Disconnect:
    node: int


Event = Union[Connect, Login, NewUserSignup, MenuChange, GenericActivity, Disconnect]
