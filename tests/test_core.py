import os
import sys

import pytest
import torch

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
import modgraph  # noqa: E402
from modgraph import protos as P  # noqa: E402


class _Probe(modgraph.Module):
    """Identity that records every output gradient it receives."""

    def __init__(self) -> None:
        super().__init__()
        self.received = []

    def update_output(self, input):
        self.output = input
        return input

    def update_grad_input(self, input, grad_output):
        self.received.append(grad_output)
        return grad_output


class _Silent(modgraph.Module):
    def update_output(self, input):
        return None

    def update_grad_input(self, input, grad_output):
        return None


def _linear_ref(module: P.Linear, x: torch.Tensor, weight=None, bias=None) -> torch.Tensor:
    weight = module.weight if weight is None else weight
    bias = module.bias if bias is None else bias
    return weight @ x + bias


def _build_two_heads():
    x1 = P.Linear(20, 20)()
    x2 = P.Linear(10, 10)()
    m0 = P.Linear(20, 1)(P.Tanh()(x1))
    m1 = P.Linear(10, 1)(P.Tanh()(x2))
    madd = P.CAddTable()(m0, m1)
    m2 = P.Sigmoid()(madd)
    m3 = P.Tanh()(madd)
    gm = modgraph.GraphModule([x1, x2], [m2, m3])
    linears = [x1.module, x2.module, m0.module, m1.module]
    return gm, linears


def test_single_module_forward_matches_module():
    torch.manual_seed(0)
    lin = P.Linear(4, 3)
    node = lin()
    gm = modgraph.GraphModule([node], [node])
    x = torch.randn(4)
    out = gm.forward(x)
    assert torch.equal(out, lin.update_output(x))
    assert gm.output is out


def test_two_heads_end_to_end_matches_autograd():
    torch.manual_seed(1)
    gm, (l1, l2, l3, l4) = _build_two_heads()
    x = torch.rand(20)
    y = torch.rand(10)

    out = gm.forward([x, y])
    assert isinstance(out, tuple) and len(out) == 2
    assert out[0].shape == (1,) and out[1].shape == (1,)

    g1, g2 = torch.rand(1), torch.rand(1)
    gm.zero_grad_parameters()
    grads = gm.backward([x, y], [g1, g2])
    gm.accumulate_gradients([x, y], [g1, g2])
    assert isinstance(grads, tuple)
    assert grads[0].shape == (20,) and grads[1].shape == (10,)

    xr = x.clone().requires_grad_()
    yr = y.clone().requires_grad_()
    weights = [m.weight.clone().requires_grad_() for m in (l1, l2, l3, l4)]
    biases = [m.bias.clone().requires_grad_() for m in (l1, l2, l3, l4)]
    a = torch.tanh(_linear_ref(l1, xr, weights[0], biases[0]))
    b = torch.tanh(_linear_ref(l2, yr, weights[1], biases[1]))
    s = _linear_ref(l3, a, weights[2], biases[2]) + _linear_ref(l4, b, weights[3], biases[3])
    o1, o2 = torch.sigmoid(s), torch.tanh(s)
    torch.testing.assert_close(out[0], o1.detach())
    torch.testing.assert_close(out[1], o2.detach())

    loss = (o1 * g1).sum() + (o2 * g2).sum()
    ref = torch.autograd.grad(loss, [xr, yr] + weights + biases)
    torch.testing.assert_close(grads[0], ref[0])
    torch.testing.assert_close(grads[1], ref[1])
    for idx, module in enumerate((l1, l2, l3, l4)):
        torch.testing.assert_close(module.grad_weight, ref[2 + idx])
        torch.testing.assert_close(module.grad_bias, ref[6 + idx])


def test_graph_matches_sequential_composition():
    torch.manual_seed(2)
    m0 = P.Linear(5, 10)()
    m1 = P.Linear(10, 20)()
    m2 = P.Linear(30, 50)(P.JoinTable(0)(m0, m1))
    gm = modgraph.GraphModule([m0, m1], [m2])

    nn0, nn1, nn2 = P.Linear(5, 10), P.Linear(10, 20), P.Linear(30, 50)
    for dst, src in zip((nn0, nn1, nn2), (m0, m1, m2)):
        dst.weight.copy_(src.module.weight)
        dst.bias.copy_(src.module.bias)
    seq = P.Sequential(P.ParallelTable(nn0, nn1), P.JoinTable(0), nn2)

    for _ in range(3):
        x, y = torch.rand(5), torch.rand(10)
        xx, yy = x.clone(), y.clone()
        assert torch.equal(gm.forward([x, y]), seq.update_output((xx, yy)))

        grad = torch.rand(50)
        gm.zero_grad_parameters()
        seq.zero_grad_parameters()
        gi = gm.backward([x, y], grad)
        si = seq.update_grad_input((xx, yy), grad.clone())
        assert torch.equal(gi[0], si[0])
        assert torch.equal(gi[1], si[1])

        gm.accumulate_gradients([x, y], grad)
        seq.acc_grad_parameters((xx, yy), grad.clone())
        for node, ref in zip((m0, m1, m2), (nn0, nn1, nn2)):
            assert torch.equal(node.module.grad_weight, ref.grad_weight)
            assert torch.equal(node.module.grad_bias, ref.grad_bias)


def test_fan_out_gradients_are_summed():
    torch.manual_seed(3)
    probe = _Probe()
    x = modgraph.Input("x")
    shared = probe(x)
    a = P.Identity()(shared)
    b = P.Identity()(shared)
    v = torch.randn(3)
    g1, g2 = torch.randn(3), torch.randn(3)
    g1_before = g1.clone()

    for outputs, grads in (([a, b], [g1, g2]), ([b, a], [g2, g1])):
        gm = modgraph.GraphModule([x], outputs)
        gm.forward(v)
        gi = gm.backward(v, grads)
        torch.testing.assert_close(probe.received[-1], g1 + g2)
        torch.testing.assert_close(gi, g1 + g2)
    assert torch.equal(g1, g1_before)


def test_same_producer_used_twice_by_one_consumer():
    x = modgraph.Input()
    out = P.CAddTable()(x, x)
    gm = modgraph.GraphModule([x], [out])
    v = torch.randn(4)
    torch.testing.assert_close(gm.forward(v), 2 * v)
    g = torch.randn(4)
    torch.testing.assert_close(gm.backward(v, g), 2 * g)


def test_tuple_valued_fan_out_sums_element_wise():
    x = modgraph.Input()
    parts = P.SplitTable(0)(x)
    out = P.CAddTable()(P.SelectTable(0)(parts), P.SelectTable(1)(parts))
    gm = modgraph.GraphModule([x], [out])
    v = torch.randn(2, 3)
    torch.testing.assert_close(gm.forward(v), v[0] + v[1])
    g = torch.randn(3)
    torch.testing.assert_close(gm.backward(v, g), torch.stack([g, g]))


def test_multi_output_follows_declaration_order():
    x = modgraph.Input()
    o1 = P.Tanh()(x)
    o2 = P.Sigmoid()(x)
    v = torch.randn(5)
    expected = {o1.id: torch.tanh(v), o2.id: torch.sigmoid(v)}
    for outputs in ([o1, o2], [o2, o1]):
        gm = modgraph.GraphModule([x], outputs)
        result = gm.forward([v])
        assert isinstance(result, tuple) and len(result) == 2
        for node, value in zip(outputs, result):
            torch.testing.assert_close(value, expected[node.id])


def test_pass_through_output_returns_raw_value():
    x = modgraph.Input()
    gm = modgraph.GraphModule([x], [x])
    v = torch.randn(3)
    g = torch.randn(3)
    assert gm.forward(v) is v
    assert gm.backward(v, g) is g


def test_parameter_aggregation_counts_every_module_node():
    torch.manual_seed(4)
    gm, linears = _build_two_heads()
    params, grads = gm.parameters()
    assert len(params) == len(grads) == 2 * len(linears)
    for param, grad in zip(params, grads):
        assert param.shape == grad.shape
    expected = 0
    for node in gm.module_nodes():
        found = node.module.parameters()
        expected += len(found[0]) if found else 0
    assert len(params) == expected

    x = modgraph.Input()
    gm2 = modgraph.GraphModule([x], [P.Linear(3, 2, bias=False)(P.Tanh()(x))])
    assert len(gm2.parameters()[0]) == 1

    gm3 = modgraph.GraphModule([x], [P.Tanh()(x)])
    assert gm3.parameters() is None
    gm3.zero_grad_parameters()
    gm3.update_parameters(0.1)


def test_arity_mismatch_raises_before_evaluation():
    probe = _Probe()
    x = modgraph.Input()
    y = modgraph.Input()
    out = P.CAddTable()(probe(x), y)
    gm = modgraph.GraphModule([x, y], [out])
    with pytest.raises(modgraph.ArityMismatchError):
        gm.forward([torch.randn(2)])
    assert gm.output is None and probe.output is None

    v = [torch.randn(2), torch.randn(2)]
    gm.forward(v)
    with pytest.raises(modgraph.ArityMismatchError):
        gm.backward(v, [torch.randn(2), torch.randn(2)])
    with pytest.raises(modgraph.ArityMismatchError):
        gm.accumulate_gradients(v[:1], torch.randn(2))
    assert probe.received == []


def test_malformed_wiring_is_rejected():
    x = modgraph.Input()
    stray = P.Linear(3, 3)()
    dangling = P.CAddTable()(P.Identity()(x), stray)
    with pytest.raises(modgraph.MalformedGraphError):
        modgraph.GraphModule([x], [dangling])

    z = modgraph.Input()
    with pytest.raises(modgraph.MalformedGraphError):
        modgraph.GraphModule([x, z], [P.Identity()(x)])

    with pytest.raises(modgraph.MalformedGraphError):
        modgraph.GraphModule([x, x], [P.Identity()(x)])
    with pytest.raises(modgraph.MalformedGraphError):
        modgraph.GraphModule([x], [])

    bad_slot = modgraph.Input()
    odd = P.Identity()()
    odd.add(bad_slot, slot=2)
    with pytest.raises(modgraph.MalformedGraphError):
        modgraph.GraphModule([bad_slot], [odd])


def test_cyclic_wiring_is_rejected():
    x = modgraph.Input()
    a = P.Identity()(x)
    b = P.Identity()(a)
    a.add(b)
    with pytest.raises(modgraph.CycleDetectedError):
        modgraph.GraphModule([x], [b])
    with pytest.raises(modgraph.MalformedGraphError):
        modgraph.GraphModule([x], [b])


def test_skipped_node_surfaces_as_missing_input():
    x = modgraph.Input()
    mid = modgraph.Input("mid")
    mid.add(_Silent()(x))
    out = P.Identity()(mid)
    gm = modgraph.GraphModule([x], [out])
    with modgraph.record(gm) as trace:
        with pytest.raises(modgraph.MissingInputError):
            gm.forward(torch.randn(2))
    assert len(trace.skipped) == 2
    assert all(isinstance(e.error, modgraph.UnroutableNodeError) for e in trace.skipped)


def test_verbose_config_prints_skips(capsys):
    x = modgraph.Input()
    mid = modgraph.Input("mid")
    mid.add(_Silent()(x, name="silent"))
    gm = modgraph.GraphModule(
        [x],
        [P.Identity()(mid)],
        config=modgraph.GraphConfig(verbose=True, name="quiet"),
    )
    with pytest.raises(modgraph.MissingInputError):
        gm.forward(torch.randn(2))
    captured = capsys.readouterr().out
    assert "[quiet] forward skipping" in captured
    assert ":silent: module produced no output" in captured
    assert ":mid: no module and no buffered input" in captured


def test_unknown_node_kind_is_skipped():
    class _Tagged(modgraph.Node):
        kind = "tagged"

    x = modgraph.Input()
    tagged = _Tagged("tag")
    tagged.add(x)
    gm = modgraph.GraphModule([x], [P.Identity()(tagged)])
    with modgraph.record(gm) as trace:
        with pytest.raises(modgraph.MissingInputError):
            gm.forward(torch.randn(2))
    assert [e.kind for e in trace.skipped] == ["tagged"]
    assert trace.visits("forward") == [gm.source.id, x.id]


def test_backward_without_forward_runs_forward_first():
    torch.manual_seed(5)
    lin = P.Linear(3, 2)
    node = lin()
    gm = modgraph.GraphModule([node], [node])
    x = torch.randn(3)
    g = torch.randn(2)
    gi = gm.backward(x, g)
    torch.testing.assert_close(gi, lin.weight.t() @ g)
    torch.testing.assert_close(gm.output, lin.weight @ x + lin.bias)


def test_accumulation_reuses_latest_backward():
    probe = _Probe()
    x = modgraph.Input()
    out = P.Linear(3, 3)(probe(x))
    gm = modgraph.GraphModule([x], [out])
    v = torch.randn(3)
    g = torch.randn(3)
    gm.forward(v)
    gm.backward(v, g)
    gm.accumulate_gradients(v, g)
    assert len(probe.received) == 1

    gm.accumulate_gradients(v, g.clone())
    assert len(probe.received) == 2


def test_accumulation_scale_and_zeroing():
    torch.manual_seed(6)
    node = P.Linear(2, 2)()
    gm = modgraph.GraphModule([node], [node])
    x, g = torch.randn(2), torch.randn(2)
    gm.forward(x)
    gm.backward(x, g)
    gm.accumulate_gradients(x, g, scale=0.5)
    gm.accumulate_gradients(x, g, scale=0.5)
    torch.testing.assert_close(node.module.grad_weight, torch.outer(g, x))
    gm.zero_grad_parameters()
    assert torch.count_nonzero(node.module.grad_weight) == 0


def test_nested_graph_module_behaves_like_flat_graph():
    torch.manual_seed(7)
    a = modgraph.Input()
    inner_lin = P.Linear(4, 4)
    inner = modgraph.GraphModule([a], [P.Tanh()(inner_lin(a))])
    x = modgraph.Input()
    outer_lin = P.Linear(4, 2)
    outer = modgraph.GraphModule([x], [outer_lin(inner(x))])

    v = torch.randn(4)
    g = torch.randn(2)
    out = outer.forward(v)
    outer.zero_grad_parameters()
    gi = outer.backward(v, g)
    outer.accumulate_gradients(v, g)

    vr = v.clone().requires_grad_()
    w = inner_lin.weight.clone().requires_grad_()
    ref = _linear_ref(outer_lin, torch.tanh(_linear_ref(inner_lin, vr, weight=w)))
    torch.testing.assert_close(out, ref.detach())
    ref_gv, ref_gw = torch.autograd.grad((ref * g).sum(), [vr, w])
    torch.testing.assert_close(gi, ref_gv)
    torch.testing.assert_close(inner_lin.grad_weight, ref_gw)
    assert len(outer.parameters()[0]) == 4


def test_nested_graph_takes_tuple_values_by_declared_arity():
    a = modgraph.Input()
    summing = modgraph.GraphModule([a], [P.CAddTable()(a)])
    x = modgraph.Input()
    outer = modgraph.GraphModule([x], [summing(P.SplitTable(0)(x))])
    v = torch.randn(2, 3)
    g = torch.randn(3)
    torch.testing.assert_close(outer.forward(v), v[0] + v[1])
    torch.testing.assert_close(outer.backward(v, g), torch.stack([g, g]))
    outer.accumulate_gradients(v, g)

    b = modgraph.Input()
    splitting = modgraph.GraphModule([b], [P.SplitTable(0)(b)])
    y = modgraph.Input()
    outer2 = modgraph.GraphModule([y], [P.CAddTable()(splitting(y))])
    torch.testing.assert_close(outer2.forward(v), v[0] + v[1])
    torch.testing.assert_close(outer2.backward(v, g), torch.stack([g, g]))
    outer2.accumulate_gradients(v, g)
    assert isinstance(splitting.output, tuple) and len(splitting.output) == 2


def test_shared_sequential_at_two_nodes_matches_autograd():
    torch.manual_seed(9)
    lin = P.Linear(2, 2)
    seq = P.Sequential(lin, P.Tanh())
    a = modgraph.Input("a")
    b = modgraph.Input("b")
    gm = modgraph.GraphModule([a, b], [P.CAddTable()(seq(a), seq(b))])
    assert len(gm.parameters()[0]) == 4

    va, vb, g = torch.randn(2), torch.randn(2), torch.randn(2)
    gm.zero_grad_parameters()
    ga, gb = gm.backward([va, vb], g)
    gm.accumulate_gradients([va, vb], g)

    ra = va.clone().requires_grad_()
    rb = vb.clone().requires_grad_()
    w = lin.weight.clone().requires_grad_()
    bias = lin.bias.clone().requires_grad_()
    out = torch.tanh(w @ ra + bias) + torch.tanh(w @ rb + bias)
    ref = torch.autograd.grad((out * g).sum(), [ra, rb, w, bias])
    torch.testing.assert_close(gm.output, out.detach())
    torch.testing.assert_close(ga, ref[0])
    torch.testing.assert_close(gb, ref[1])
    torch.testing.assert_close(lin.grad_weight, ref[2])
    torch.testing.assert_close(lin.grad_bias, ref[3])


def test_verbose_config_prints_visits(capsys):
    x = modgraph.Input()
    gm = modgraph.GraphModule(
        [x],
        [P.Tanh()(x)],
        config=modgraph.GraphConfig(verbose=True, name="demo"),
    )
    gm.forward(torch.randn(2))
    captured = capsys.readouterr().out
    assert "[demo] forward V :" in captured
    assert "Tanh" in captured


def test_update_parameters_steps_against_gradient():
    torch.manual_seed(8)
    node = P.Linear(2, 1)()
    gm = modgraph.GraphModule.build([node], [node])
    before = node.module.weight.clone()
    x, g = torch.randn(2), torch.randn(1)
    gm.zero_grad_parameters()
    gm.backward(x, g)
    gm.accumulate_gradients(x, g)
    gm.update_parameters(0.1)
    torch.testing.assert_close(node.module.weight, before - 0.1 * torch.outer(g, x))


def _run_all():
    tests = [
        test_single_module_forward_matches_module,
        test_two_heads_end_to_end_matches_autograd,
        test_graph_matches_sequential_composition,
        test_fan_out_gradients_are_summed,
        test_same_producer_used_twice_by_one_consumer,
        test_tuple_valued_fan_out_sums_element_wise,
        test_multi_output_follows_declaration_order,
        test_pass_through_output_returns_raw_value,
        test_parameter_aggregation_counts_every_module_node,
        test_arity_mismatch_raises_before_evaluation,
        test_malformed_wiring_is_rejected,
        test_cyclic_wiring_is_rejected,
        test_skipped_node_surfaces_as_missing_input,
        test_unknown_node_kind_is_skipped,
        test_backward_without_forward_runs_forward_first,
        test_accumulation_reuses_latest_backward,
        test_accumulation_scale_and_zeroing,
        test_nested_graph_module_behaves_like_flat_graph,
        test_nested_graph_takes_tuple_values_by_declared_arity,
        test_shared_sequential_at_two_nodes_matches_autograd,
        test_update_parameters_steps_against_gradient,
    ]
    for test in tests:
        name = test.__name__
        print(f"Running {name}...")
        test()
        print(f"✓ {name}")
    print("All tests passed ✔")


if __name__ == "__main__":
    _run_all()
