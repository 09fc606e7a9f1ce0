"""Membership changes: simple changes, joint consensus, and restoring a configuration."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field, replace
from typing import Iterable, Union


class ConfChangeType(enum.IntEnum):
    ADD_NODE = 0
    REMOVE_NODE = 1
    UPDATE_NODE = 2
    ADD_LEARNER_NODE = 3

    def __str__(self) -> str:
        return _TYPE_NAMES[self]


_TYPE_NAMES = {
    ConfChangeType.ADD_NODE: "ConfChangeAddNode",
    ConfChangeType.REMOVE_NODE: "ConfChangeRemoveNode",
    ConfChangeType.UPDATE_NODE: "ConfChangeUpdateNode",
    ConfChangeType.ADD_LEARNER_NODE: "ConfChangeAddLearnerNode",
}


@dataclass(frozen=True)
class ConfChangeSingle:
    """One membership operation on one node."""

    type: Union[ConfChangeType, int] = ConfChangeType.ADD_NODE
    node_id: int = 0


@dataclass
class ConfState:
    """Serialisable description of a (possibly joint) configuration."""

    voters: list[int] = field(default_factory=list)
    voters_outgoing: list[int] = field(default_factory=list)
    learners: list[int] = field(default_factory=list)
    learners_next: list[int] = field(default_factory=list)
    auto_leave: bool = False


@dataclass
class Progress:
    """A leader's view of one peer's replication state."""

    match: int = 0
    next: int = 0
    is_learner: bool = False
    recent_active: bool = False


@dataclass
class Config:
    """Active configuration: incoming and outgoing voter sets plus learners."""

    incoming: set[int] = field(default_factory=set)
    outgoing: set[int] = field(default_factory=set)
    learners: set[int] = field(default_factory=set)
    learners_next: set[int] = field(default_factory=set)
    auto_leave: bool = False

    @property
    def joint(self) -> bool:
        return bool(self.outgoing)

    def clone(self) -> Config:
        """A copy whose sets can be changed without affecting this one."""
        return Config(
            incoming=set(self.incoming),
            outgoing=set(self.outgoing),
            learners=set(self.learners),
            learners_next=set(self.learners_next),
            auto_leave=self.auto_leave,
        )


@dataclass
class ProgressTracker:
    """The configuration together with the progress of every tracked peer."""

    max_inflight: int = 0
    max_inflight_bytes: int = 0
    config: Config = field(default_factory=Config)
    progress: dict[int, Progress] = field(default_factory=dict)

    def conf_state(self) -> ConfState:
        """Describe the active configuration with sorted id lists."""
        return ConfState(
            voters=sorted(self.config.incoming),
            voters_outgoing=sorted(self.config.outgoing),
            learners=sorted(self.config.learners),
            learners_next=sorted(self.config.learners_next),
            auto_leave=self.config.auto_leave,
        )


class ConfChangeError(ValueError):
    """A configuration change was refused."""


ChangeResult = tuple[Config, dict[int, Progress]]


@dataclass
class Changer:
    """Validates and computes configuration changes without touching the tracker."""

    tracker: ProgressTracker
    last_index: int = 0

    def enter_joint(self, auto_leave: bool, *args: ConfChangeSingle) -> ChangeResult:
        """Copy the incoming voters to the outgoing set, then apply the changes."""
        cfg, trk = self._check_and_copy()
        if cfg.joint:
            raise ConfChangeError("config is already joint")
        if not cfg.incoming:
            # Adding to an empty config is allowed, but it can't become joint.
            raise ConfChangeError("can't make a zero-voter config joint")
        cfg.outgoing = set(cfg.incoming)
        self._apply(cfg, trk, args)
        cfg.auto_leave = auto_leave
        return _check_and_return(cfg, trk)

    def leave_joint(self) -> ChangeResult:
        """Drop the outgoing voters and promote staged learners."""
        cfg, trk = self._check_and_copy()
        if not cfg.joint:
            raise ConfChangeError("can't leave a non-joint config")
        for node_id in cfg.learners_next:
            cfg.learners.add(node_id)
            trk[node_id].is_learner = True
        cfg.learners_next = set()
        for node_id in cfg.outgoing:
            if node_id not in cfg.incoming and node_id not in cfg.learners:
                del trk[node_id]
        cfg.outgoing = set()
        cfg.auto_leave = False
        return _check_and_return(cfg, trk)

    def simple(self, *args: ConfChangeSingle) -> ChangeResult:
        """Apply changes that alter the incoming voters by at most one."""
        cfg, trk = self._check_and_copy()
        if cfg.joint:
            raise ConfChangeError("can't apply simple config change in joint config")
        self._apply(cfg, trk, args)
        if len(self.tracker.config.incoming ^ cfg.incoming) > 1:
            raise ConfChangeError("more than one voter changed without entering joint config")
        return _check_and_return(cfg, trk)

    def _apply(self, cfg: Config, trk: dict[int, Progress], changes: Iterable[ConfChangeSingle]) -> None:
        for cc in changes:
            if cc.node_id == 0:
                # A zeroed node id marks a change the application chose not to apply.
                continue
            if cc.type == ConfChangeType.ADD_NODE:
                self._make_voter(cfg, trk, cc.node_id)
            elif cc.type == ConfChangeType.ADD_LEARNER_NODE:
                self._make_learner(cfg, trk, cc.node_id)
            elif cc.type == ConfChangeType.REMOVE_NODE:
                self._remove(cfg, trk, cc.node_id)
            elif cc.type == ConfChangeType.UPDATE_NODE:
                pass
            else:
                raise ConfChangeError(f"unexpected conf type {int(cc.type)}")
        if not cfg.incoming:
            raise ConfChangeError("removed all voters")

    def _make_voter(self, cfg: Config, trk: dict[int, Progress], node_id: int) -> None:
        pr = trk.get(node_id)
        if pr is None:
            self._init_progress(cfg, trk, node_id, is_learner=False)
            return
        pr.is_learner = False
        cfg.learners.discard(node_id)
        cfg.learners_next.discard(node_id)
        cfg.incoming.add(node_id)

    def _make_learner(self, cfg: Config, trk: dict[int, Progress], node_id: int) -> None:
        pr = trk.get(node_id)
        if pr is None:
            self._init_progress(cfg, trk, node_id, is_learner=True)
            return
        if pr.is_learner:
            return
        self._remove(cfg, trk, node_id)
        trk[node_id] = pr
        # A peer still voting in the outgoing config is staged until leave_joint.
        if node_id in cfg.outgoing:
            cfg.learners_next.add(node_id)
        else:
            pr.is_learner = True
            cfg.learners.add(node_id)

    def _remove(self, cfg: Config, trk: dict[int, Progress], node_id: int) -> None:
        if node_id not in trk:
            return
        cfg.incoming.discard(node_id)
        cfg.learners.discard(node_id)
        cfg.learners_next.discard(node_id)
        if node_id not in cfg.outgoing:
            del trk[node_id]

    def _init_progress(self, cfg: Config, trk: dict[int, Progress], node_id: int, is_learner: bool) -> None:
        if is_learner:
            cfg.learners.add(node_id)
        else:
            cfg.incoming.add(node_id)
        # New peers count as recently active so a quorum check doesn't depose the leader.
        trk[node_id] = Progress(
            match=0,
            next=max(self.last_index, 1),
            is_learner=is_learner,
            recent_active=True,
        )

    def _check_and_copy(self) -> ChangeResult:
        cfg = self.tracker.config.clone()
        trk = {node_id: replace(pr) for node_id, pr in self.tracker.progress.items()}
        return _check_and_return(cfg, trk)


def _check_invariants(cfg: Config, trk: dict[int, Progress]) -> None:
    for ids in (cfg.incoming | cfg.outgoing, cfg.learners, cfg.learners_next):
        for node_id in sorted(ids):
            if node_id not in trk:
                raise ConfChangeError(f"no progress for {node_id}")
    for node_id in sorted(cfg.learners_next):
        if node_id not in cfg.outgoing:
            raise ConfChangeError(f"{node_id} is in LearnersNext, but not Voters[1]")
        if trk[node_id].is_learner:
            raise ConfChangeError(f"{node_id} is in LearnersNext, but is already marked as learner")
    for node_id in sorted(cfg.learners):
        if node_id in cfg.outgoing:
            raise ConfChangeError(f"{node_id} is in Learners and Voters[1]")
        if node_id in cfg.incoming:
            raise ConfChangeError(f"{node_id} is in Learners and Voters[0]")
        if not trk[node_id].is_learner:
            raise ConfChangeError(f"{node_id} is in Learners, but is not marked as learner")
    if not cfg.joint:
        if cfg.learners_next:
            raise ConfChangeError("cfg.LearnersNext must be nil when not joint")
        if cfg.auto_leave:
            raise ConfChangeError("AutoLeave must be false when not joint")


def _check_and_return(cfg: Config, trk: dict[int, Progress]) -> ChangeResult:
    _check_invariants(cfg, trk)
    return cfg, trk


def describe(*args: ConfChangeSingle) -> str:
    """Space-separated ``Type(NodeID)`` rendering of the changes."""
    parts = []
    for cc in args:
        try:
            name = str(ConfChangeType(cc.type))
        except ValueError:
            name = str(int(cc.type))
        parts.append(f"{name}({cc.node_id})")
    return " ".join(parts)


def _to_conf_change_single(cs: ConfState) -> tuple[list[ConfChangeSingle], list[ConfChangeSingle]]:
    """Changes building the outgoing config, then changes entering the described state."""
    outgoing = [ConfChangeSingle(ConfChangeType.ADD_NODE, node_id) for node_id in cs.voters_outgoing]
    incoming = [ConfChangeSingle(ConfChangeType.REMOVE_NODE, node_id) for node_id in cs.voters_outgoing]
    incoming += [ConfChangeSingle(ConfChangeType.ADD_NODE, node_id) for node_id in cs.voters]
    incoming += [ConfChangeSingle(ConfChangeType.ADD_LEARNER_NODE, node_id) for node_id in cs.learners]
    # Learners-to-be that still vote in the outgoing config.
    incoming += [ConfChangeSingle(ConfChangeType.ADD_LEARNER_NODE, node_id) for node_id in cs.learners_next]
    return outgoing, incoming


def restore(changer: Changer, conf_state: ConfState) -> ChangeResult:
    """Enact ``conf_state`` starting from the (empty) configuration of ``changer``."""
    working = replace(changer, tracker=replace(changer.tracker))
    outgoing, incoming = _to_conf_change_single(conf_state)

    def step(cfg_trk: ChangeResult) -> None:
        working.tracker.config, working.tracker.progress = cfg_trk

    if not outgoing:
        for cc in incoming:
            step(working.simple(cc))
    else:
        # Build the outgoing config as if it were the only one, then rotate it out.
        for cc in outgoing:
            step(working.simple(cc))
        step(working.enter_joint(conf_state.auto_leave, *incoming))
    return working.tracker.config, working.tracker.progress