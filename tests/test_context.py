"""
Tests for the Flowline execution context.
"""

from hypothesis import given, strategies as st

from flowline.automation.execution.context import ExecutionContext
from flowline.automation.types import Execution


class TestExecutionContext:
    """Tests for variable access and template substitution."""

    def test_nested_lookup(self):
        """Test dot-notation access into dicts and lists."""
        context = ExecutionContext(variables={"fetch": {"items": [{"name": "first"}]}})

        assert context.get("fetch.items.0.name") == "first"
        assert context.get("fetch.items.5.name", "none") == "none"
        assert context.has("fetch.items")
        assert not context.has("fetch.missing")

    def test_builtin_names(self):
        context = ExecutionContext(
            variables={"x": 1},
            environment="staging",
            priority=3,
            env={"REGION": "eu"},
        )

        assert context.get("env.REGION") == "eu"
        assert context.get("environment") == "staging"
        assert context.get("priority") == 3

    def test_render_leaves_unknown_tokens(self):
        """Test unknown tokens stay as written."""
        context = ExecutionContext(variables={"user": {"name": "Ada"}})

        assert context.render("Hi {{ user.name }}, {{ missing }}") == "Hi Ada, {{ missing }}"

    def test_render_is_a_single_pass(self):
        """Test substituted values are not scanned again."""
        context = ExecutionContext(variables={"a": "{{ b }}", "b": "deep"})

        assert context.render("value: {{ a }}") == "value: {{ b }}"

    def test_resolve_keeps_types(self):
        """Test a whole-token string resolves to the raw value."""
        context = ExecutionContext(variables={"items": [1, 2], "count": 2})
        resolved = context.resolve({"list": "{{ items }}", "text": "n={{ count }}", "n": 5})

        assert resolved == {"list": [1, 2], "text": "n=2", "n": 5}

    def test_step_input_is_a_copy(self):
        """Test steps cannot mutate the shared variables through their input."""
        context = ExecutionContext(variables={"data": {"k": [1]}})
        step_input = context.step_input()
        step_input["data"]["k"].append(2)

        assert context.get("data.k") == [1]

    def test_step_output(self):
        context = ExecutionContext(variables={})
        context.apply_step_output("fetch", {"ok": True})

        assert context.get("fetch.ok") is True

    def test_scoped_does_not_leak(self):
        context = ExecutionContext(variables={"x": 1})
        child = context.scoped({"item": "a"})

        assert child.get("item") == "a"
        assert child.get("x") == 1
        assert not context.has("item")

    def test_suspend_and_resume(self):
        """Test suspensions are recorded on the execution."""
        execution = Execution(workflow_id="w")
        execution.start()
        context = ExecutionContext(execution=execution)

        context.suspend("wait", "waiting 10ms")
        assert execution.suspensions["wait"].reason == "waiting 10ms"

        context.resume("wait")
        assert "wait" not in execution.suspensions

    @given(
        name=st.from_regex(r"[a-z]{1,8}", fullmatch=True),
        value=st.text(alphabet=st.characters(blacklist_characters="{}"), max_size=20),
        prefix=st.text(alphabet=st.characters(blacklist_characters="{}"), max_size=10),
    )
    def test_substitution_is_idempotent(self, name, value, prefix):
        """Test rendering an already rendered template changes nothing."""
        context = ExecutionContext(variables={name: value})
        once = context.render(prefix + "{{ " + name + " }}")

        assert context.render(once) == once
