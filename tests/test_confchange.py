import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from raftcore.confchange import (
    Changer,
    Config,
    ConfChangeError,
    ConfChangeSingle,
    ConfChangeType,
    ConfState,
    Progress,
    ProgressTracker,
    describe,
    restore,
)

V = ConfChangeType.ADD_NODE
L = ConfChangeType.ADD_LEARNER_NODE
R = ConfChangeType.REMOVE_NODE
U = ConfChangeType.UPDATE_NODE


def cc(kind, node_id):
    return ConfChangeSingle(type=kind, node_id=node_id)


def changer(last_index=10):
    return Changer(tracker=ProgressTracker(max_inflight=10), last_index=last_index)


def commit(c, result):
    c.tracker.config, c.tracker.progress = result


def run_simple(c, changes):
    for change in changes:
        commit(c, c.simple(change))


def run_joint(c, changes):
    cfg, trk = c.enter_joint(False, *changes)
    cfg2a, trk2a = c.enter_joint(True, *changes)
    assert cfg2a.auto_leave is True
    cfg2a.auto_leave = False
    assert cfg == cfg2a
    assert trk == trk2a
    commit(c, (cfg, trk))
    cfg2b, trk2b = c.leave_joint()
    commit(c, (cfg, trk))
    cfg, trk = c.leave_joint()
    assert cfg == cfg2b
    assert trk == trk2b
    commit(c, (cfg, trk))


# --- simple / joint equivalence -------------------------------------------------

initial_changes = st.lists(st.integers(1, 5), min_size=1, max_size=5).map(
    lambda ids: [cc(V, 1)] + [cc(V, i) for i in ids]
)
conf_changes = st.lists(
    st.tuples(st.sampled_from(list(ConfChangeType)), st.integers(2, 10)),
    min_size=1,
    max_size=9,
).map(lambda pairs: [cc(kind, node_id) for kind, node_id in pairs])


@settings(max_examples=200, deadline=None)
@given(initial_changes, conf_changes)
def test_simple_and_joint_changes_agree(setup, changes):
    c1 = changer()
    run_simple(c1, setup)
    run_simple(c1, changes)

    c2 = changer()
    run_simple(c2, setup)
    run_joint(c2, changes)

    assert c1.tracker.config == c2.tracker.config
    assert c1.tracker.progress == c2.tracker.progress


# --- restore --------------------------------------------------------------------


def sorted_state(cs):
    return ConfState(
        voters=sorted(cs.voters),
        voters_outgoing=sorted(cs.voters_outgoing),
        learners=sorted(cs.learners),
        learners_next=sorted(cs.learners_next),
        auto_leave=cs.auto_leave,
    )


def restored_state(cs):
    chg = Changer(tracker=ProgressTracker(max_inflight=20), last_index=10)
    cfg, trk = restore(chg, cs)
    chg.tracker.config, chg.tracker.progress = cfg, trk
    return chg.tracker.conf_state()


@pytest.mark.parametrize(
    "cs",
    [
        ConfState(voters=[1, 2, 3]),
        ConfState(voters=[1, 2, 3], learners=[4, 5, 6]),
        ConfState(voters=[1, 2, 3], learners=[5], voters_outgoing=[1, 2, 4, 6], learners_next=[4]),
    ],
)
def test_restore_unit_cases(cs):
    assert restored_state(cs) == sorted_state(cs)


def test_restore_empty_conf_state_fails_without_voters():
    # With nothing to add, no change is run and the result stays empty.
    assert restored_state(ConfState()) == ConfState()


def test_restore_joint_example_config():
    chg = changer()
    cfg, trk = restore(
        chg,
        ConfState(voters=[1, 2, 3], learners=[5], voters_outgoing=[1, 2, 4, 6], learners_next=[4]),
    )
    assert cfg.incoming == {1, 2, 3}
    assert cfg.outgoing == {1, 2, 4, 6}
    assert cfg.learners == {5}
    assert cfg.learners_next == {4}
    assert sorted(trk) == [1, 2, 3, 4, 5, 6]
    assert trk[5].is_learner and not trk[4].is_learner
    # The changer passed in is left untouched.
    assert chg.tracker.config == Config()
    assert chg.tracker.progress == {}


@st.composite
def conf_states(draw):
    n_voters = draw(st.integers(1, 5))
    n_learners = draw(st.integers(0, 4))
    n_removed = draw(st.integers(0, 2))
    ids = draw(st.permutations(list(range(1, 2 * (n_voters + n_learners + n_removed) + 1))))
    voters = list(ids[:n_voters])
    ids = ids[n_voters:]
    learners = list(ids[:n_learners])
    ids = ids[n_learners:]
    retained = draw(st.integers(0, n_voters))
    voters_outgoing = voters[:retained] + list(ids[:n_removed])
    learners_next = list(ids[: draw(st.integers(0, n_removed))]) if n_removed else []
    auto_leave = bool(voters_outgoing) and draw(st.booleans())
    return ConfState(
        voters=voters,
        voters_outgoing=voters_outgoing,
        learners=learners,
        learners_next=learners_next,
        auto_leave=auto_leave,
    )


@settings(max_examples=300, deadline=None)
@given(conf_states())
def test_restore_round_trips(cs):
    assert restored_state(cs) == sorted_state(cs)


# --- individual operations and errors -------------------------------------------


def test_simple_adds_voter_with_fresh_progress():
    c = changer(last_index=0)
    cfg, trk = c.simple(cc(V, 1))
    assert cfg.incoming == {1}
    assert trk[1] == Progress(match=0, next=1, is_learner=False, recent_active=True)


def test_simple_rejects_two_voter_changes():
    c = changer()
    with pytest.raises(ConfChangeError, match="more than one voter changed"):
        c.simple(cc(V, 1), cc(V, 2))


def test_removing_all_voters_fails():
    c = changer()
    commit(c, c.simple(cc(V, 1)))
    with pytest.raises(ConfChangeError, match="removed all voters"):
        c.simple(cc(R, 1))


def test_zero_node_id_is_ignored():
    c = changer()
    commit(c, c.simple(cc(V, 1)))
    cfg, trk = c.simple(cc(R, 0), cc(U, 1))
    assert cfg.incoming == {1}
    assert list(trk) == [1]


def test_unexpected_type_is_rejected():
    c = changer()
    with pytest.raises(ConfChangeError, match="unexpected conf type 7"):
        c.simple(ConfChangeSingle(type=7, node_id=1))


def test_enter_joint_on_empty_config_fails():
    with pytest.raises(ConfChangeError, match="zero-voter"):
        changer().enter_joint(False, cc(V, 1))


def test_enter_joint_twice_fails_and_simple_in_joint_fails():
    c = changer()
    commit(c, c.simple(cc(V, 1)))
    commit(c, c.enter_joint(True, cc(V, 2), cc(V, 3)))
    assert c.tracker.config.outgoing == {1}
    assert c.tracker.config.auto_leave is True
    with pytest.raises(ConfChangeError, match="already joint"):
        c.enter_joint(False)
    with pytest.raises(ConfChangeError, match="joint config"):
        c.simple(cc(V, 4))


def test_leave_joint_requires_joint_config():
    c = changer()
    commit(c, c.simple(cc(V, 1)))
    with pytest.raises(ConfChangeError, match="non-joint"):
        c.leave_joint()


def test_demotion_is_staged_until_leave_joint():
    c = changer()
    commit(c, c.simple(cc(V, 1)))
    commit(c, c.simple(cc(V, 2)))
    commit(c, c.enter_joint(False, cc(L, 2)))
    assert c.tracker.config.learners_next == {2}
    assert c.tracker.progress[2].is_learner is False
    cfg, trk = c.leave_joint()
    assert cfg.incoming == {1}
    assert cfg.outgoing == set()
    assert cfg.learners == {2}
    assert cfg.learners_next == set()
    assert trk[2].is_learner is True


def test_leave_joint_drops_removed_voters():
    c = changer()
    commit(c, c.simple(cc(V, 1)))
    commit(c, c.simple(cc(V, 2)))
    commit(c, c.enter_joint(False, cc(R, 2), cc(V, 3)))
    assert 2 in c.tracker.progress
    cfg, trk = c.leave_joint()
    assert cfg.incoming == {1, 3}
    assert sorted(trk) == [1, 3]


def test_invalid_starting_state_is_rejected():
    tracker = ProgressTracker(config=Config(incoming={1}))
    with pytest.raises(ConfChangeError, match="no progress for 1"):
        Changer(tracker=tracker).simple(cc(V, 2))


def test_config_clone_is_independent():
    cfg = Config(incoming={1, 2}, learners={3})
    copy = cfg.clone()
    copy.incoming.add(4)
    assert cfg.incoming == {1, 2}
    assert copy == Config(incoming={1, 2, 4}, learners={3})


def test_describe():
    assert describe(cc(V, 1), cc(L, 2), cc(R, 3), cc(U, 4)) == (
        "ConfChangeAddNode(1) ConfChangeAddLearnerNode(2) "
        "ConfChangeRemoveNode(3) ConfChangeUpdateNode(4)"
    )
    assert describe() == ""