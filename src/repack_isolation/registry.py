# SPDX-FileCopyrightText: 2025 Blackcat Informatics® Inc.
# SPDX-License-Identifier: MIT

"""Per-actor credentials and the connections opened with them."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Optional

import psycopg

from .config import ScenarioConfig

REPACK_CAPABILITY = "repack"

OWNER = "owner"
PEER = "peer"
OUTSIDER = "outsider"


@dataclass(frozen=True)
class Actor:
    key: str
    name: str
    password: str
    schema: str
    capabilities: FrozenSet[str] = frozenset()

    @property
    def can_repack(self) -> bool:
        return REPACK_CAPABILITY in self.capabilities

    def __str__(self) -> str:
        return self.name


class CredentialRegistry:
    def __init__(self, config: ScenarioConfig) -> None:
        self.config = config
        self._actors: Dict[str, Actor] = {
            OWNER: Actor(
                OWNER,
                config.owner_role,
                config.owner_password,
                config.owner_schema,
                frozenset({REPACK_CAPABILITY}),
            ),
            PEER: Actor(
                PEER,
                config.peer_role,
                config.peer_password,
                config.peer_schema,
                frozenset({REPACK_CAPABILITY}),
            ),
            OUTSIDER: Actor(
                OUTSIDER,
                config.outsider_role,
                config.outsider_password,
                config.outsider_schema,
            ),
        }

    def __getitem__(self, key: str) -> Actor:
        return self._actors[key]

    @property
    def owner(self) -> Actor:
        return self._actors[OWNER]

    @property
    def peer(self) -> Actor:
        return self._actors[PEER]

    @property
    def outsider(self) -> Actor:
        return self._actors[OUTSIDER]

    def actors(self) -> List[Actor]:
        return list(self._actors.values())

    def connect(
        self,
        actor: Actor,
        *,
        statement_timeout: Optional[float] = None,
        dbname: Optional[str] = None,
    ) -> psycopg.Connection:
        kwargs = {
            "host": self.config.host,
            "port": self.config.port,
            "user": actor.name,
            "password": actor.password,
            "dbname": dbname or self.config.dbname,
            "connect_timeout": self.config.connect_timeout,
        }
        if statement_timeout is not None:
            kwargs["options"] = f"-c statement_timeout={int(statement_timeout * 1000)}"
        return psycopg.connect(
            autocommit=True,
            **{k: v for k, v in kwargs.items() if v is not None},
        )

    def connect_admin(self, dbname: Optional[str] = None) -> psycopg.Connection:
        kwargs = {
            "host": self.config.admin_host,
            "port": self.config.port,
            "user": self.config.admin_user,
            "password": self.config.admin_password,
            "dbname": dbname or self.config.dbname,
            "connect_timeout": self.config.connect_timeout,
        }
        return psycopg.connect(
            autocommit=True,
            **{k: v for k, v in kwargs.items() if v is not None},
        )

    def tool_args(self, actor: Actor) -> List[str]:
        args = []
        if self.config.host:
            args += ["-h", self.config.host]
        args += ["-p", str(self.config.port), "-U", actor.name, "-d", self.config.dbname]
        return args

    def tool_env(self, actor: Actor) -> Dict[str, str]:
        env = os.environ.copy()
        env["PGPASSWORD"] = actor.password
        return env
