"""Unit tests for expressions module."""

import pytest

from strata.expressions import (
    EvaluationError,
    FunctionCallError,
    Scope,
    evaluate_value,
    parse_expression,
    references,
)


def _eval(source, variables=None, functions=None):
    scope = Scope(variables=variables, functions=functions)
    return parse_expression(source).evaluate(scope)


class TestScope:
    """Test cases for Scope class."""

    def test_lookup_walks_parents(self):
        """Test that child scopes see parent variables."""
        parent = Scope(variables={"local": {"a": 1}})
        child = parent.child({"each": 2})
        assert child.lookup("local") == {"a": 1}
        assert child.lookup("each") == 2

    def test_unknown_variable(self):
        """Test that unknown variables raise EvaluationError."""
        with pytest.raises(EvaluationError) as exc_info:
            Scope().lookup("missing")
        assert "missing" in str(exc_info.value)

    def test_unknown_function(self):
        """Test that unknown functions raise EvaluationError."""
        with pytest.raises(EvaluationError) as exc_info:
            _eval("nope(1)")
        assert "no function named" in str(exc_info.value)


class TestExpressions:
    """Test cases for expression evaluation."""

    def test_arithmetic_precedence(self):
        """Test operator precedence."""
        assert _eval("1 + 2 * 3") == 7
        assert _eval("(1 + 2) * 3") == 9
        assert _eval("-4 + 10 % 3") == -3

    def test_division(self):
        """Test that whole results stay integers."""
        assert _eval("6 / 3") == 2
        assert isinstance(_eval("6 / 3"), int)
        assert _eval("7 / 2") == 3.5

    def test_divide_by_zero(self):
        """Test that division by zero is an evaluation error."""
        with pytest.raises(EvaluationError):
            _eval("1 / 0")

    def test_comparison_and_logic(self):
        """Test comparison and boolean operators."""
        assert _eval("3 > 2 && 1 <= 1") is True
        assert _eval("!true || false") is False
        assert _eval('"a" == "a"') is True

    def test_bool_equality_is_type_strict(self):
        """Test that a bool never equals a string."""
        assert _eval('true == "true"') is False
        assert _eval("true != false") is True

    def test_conditional(self):
        """Test the conditional operator."""
        assert _eval('local.env == "prod" ? 3 : 1', {"local": {"env": "prod"}}) == 3
        assert _eval('local.env == "prod" ? 3 : 1', {"local": {"env": "dev"}}) == 1

    def test_attribute_and_index(self):
        """Test traversal of maps and lists."""
        variables = {"local": {"azs": ["a", "b"], "tags": {"team": "core"}}}
        assert _eval("local.azs[1]", variables) == "b"
        assert _eval('local.tags["team"]', variables) == "core"
        assert _eval("local.azs.0", variables) == "a"

    def test_missing_attribute(self):
        """Test that a missing attribute raises EvaluationError."""
        with pytest.raises(EvaluationError) as exc_info:
            _eval("local.missing", {"local": {}})
        assert "missing" in str(exc_info.value)

    def test_index_out_of_range(self):
        """Test that an out-of-range index raises EvaluationError."""
        with pytest.raises(EvaluationError):
            _eval("local.azs[5]", {"local": {"azs": ["a"]}})

    def test_tuple_and_object(self):
        """Test tuple and object constructors."""
        assert _eval("[1, 2, 3]") == [1, 2, 3]
        assert _eval('{ name = "web", "port": 80 }') == {"name": "web", "port": 80}

    def test_splat(self):
        """Test full and attribute splat expressions."""
        variables = {"local": {"subnets": [{"id": "s-1"}, {"id": "s-2"}]}}
        assert _eval("local.subnets[*].id", variables) == ["s-1", "s-2"]
        assert _eval("local.subnets.*.id", variables) == ["s-1", "s-2"]

    def test_for_list(self):
        """Test a list for expression with a condition."""
        result = _eval("[for n in [1, 2, 3, 4] : n * 10 if n % 2 == 0]")
        assert result == [20, 40]

    def test_for_map_iterates_sorted_keys(self):
        """Test that map iteration is ordered by key."""
        variables = {"local": {"m": {"b": 2, "a": 1}}}
        assert _eval("[for k, v in local.m : k]", variables) == ["a", "b"]

    def test_for_object(self):
        """Test an object for expression."""
        variables = {"local": {"names": ["x", "y"]}}
        result = _eval('{for n in local.names : n => "${n}-suffix"}', variables)
        assert result == {"x": "x-suffix", "y": "y-suffix"}

    def test_for_object_duplicate_key(self):
        """Test that duplicate keys without grouping raise."""
        with pytest.raises(EvaluationError) as exc_info:
            _eval('{for n in [1, 2] : "k" => n}')
        assert "grouping" in str(exc_info.value)

    def test_for_object_grouping(self):
        """Test the grouping mode of object for expressions."""
        assert _eval('{for n in [1, 2] : "k" => n...}') == {"k": [1, 2]}

    def test_function_call_with_expansion(self):
        """Test that a trailing ... expands the last argument."""
        functions = {"sum": lambda *args: sum(args)}
        assert _eval("sum(1, [2, 3]...)", functions=functions) == 6

    def test_function_error_wrapped(self):
        """Test that Python errors in functions become FunctionCallError."""
        def broken(value):
            raise ValueError("bad value")

        with pytest.raises(FunctionCallError) as exc_info:
            _eval("broken(1)", functions={"broken": broken})
        assert "broken()" in str(exc_info.value)

    def test_try_returns_first_success(self):
        """Test that try() falls through failing expressions."""
        assert _eval('try(local.missing, "fallback")', {"local": {}}) == "fallback"

    def test_try_all_fail(self):
        """Test that try() raises when every expression fails."""
        with pytest.raises(EvaluationError):
            _eval("try(local.a, local.b)", {"local": {}})

    def test_can(self):
        """Test can()."""
        assert _eval("can(local.a)", {"local": {"a": 1}}) is True
        assert _eval("can(local.b)", {"local": {"a": 1}}) is False

    def test_syntax_error(self):
        """Test that malformed expressions raise EvaluationError."""
        with pytest.raises(EvaluationError):
            parse_expression("1 +")


class TestEvaluateValue:
    """Test cases for evaluate_value function."""

    def test_plain_values_unchanged(self):
        """Test that literals pass through."""
        scope = Scope()
        assert evaluate_value(3, scope) == 3
        assert evaluate_value("plain", scope) == "plain"
        assert evaluate_value(None, scope) is None

    def test_single_interpolation_keeps_type(self):
        """Test that ${...} alone returns the typed value."""
        scope = Scope(variables={"local": {"count": 3, "azs": ["a"]}})
        assert evaluate_value("${local.count}", scope) == 3
        assert evaluate_value("${local.azs}", scope) == ["a"]

    def test_template_concatenates(self):
        """Test mixed literal and interpolation parts."""
        scope = Scope(variables={"local": {"env": "prod", "n": 2, "on": True}})
        assert evaluate_value("app-${local.env}-${local.n}-${local.on}", scope) == "app-prod-2-true"

    def test_escaped_interpolation(self):
        """Test that $${ is a literal ${."""
        scope = Scope()
        assert evaluate_value("cost $${var.x}", scope) == "cost ${var.x}"

    def test_nested_structures(self):
        """Test that lists and maps are evaluated recursively."""
        scope = Scope(variables={"local": {"env": "dev"}})
        value = {"tags": {"env": "${local.env}"}, "names": ["${local.env}-a"]}
        assert evaluate_value(value, scope) == {"tags": {"env": "dev"}, "names": ["dev-a"]}

    def test_interpolated_map_keys(self):
        """Test that quoted and interpolated keys are normalized."""
        scope = Scope(variables={"local": {"k": "name"}})
        value = {'"quoted"': 1, "${local.k}": 2}
        assert evaluate_value(value, scope) == {"quoted": 1, "name": 2}

    def test_heredoc(self):
        """Test heredoc bodies."""
        scope = Scope(variables={"local": {"who": "world"}})
        assert evaluate_value("<<EOF\nhello ${local.who}\nEOF", scope) == "hello world\n"

    def test_indented_heredoc(self):
        """Test that <<- strips the common indentation."""
        value = "<<-EOT\n    line one\n      line two\n    EOT"
        assert evaluate_value(value, Scope()) == "line one\n  line two\n"

    def test_template_with_non_string(self):
        """Test that a map cannot be interpolated into a string."""
        scope = Scope(variables={"local": {"m": {"a": 1}}})
        with pytest.raises(EvaluationError):
            evaluate_value("prefix-${local.m}", scope)

    def test_repr_list_in_call(self):
        """Test single-quoted list elements as python-hcl2 writes them."""
        scope = Scope(functions={"contains": lambda values, value: value in values})
        assert evaluate_value("${contains(['plan', 'apply'], \"plan\")}", scope) is True

    def test_repr_map_in_call(self):
        """Test dict literals with single-quoted keys."""
        scope = Scope(
            variables={"local": {"base": {"owner": "platform"}}},
            functions={"merge": lambda *maps: {k: v for m in maps for k, v in m.items()}},
        )
        value = "${merge(local.base, {'team': 'web', 'size': 2})}"
        assert evaluate_value(value, scope) == {"owner": "platform", "team": "web", "size": 2}

    def test_repr_quoted_key_and_constants(self):
        """Test quoted keys and Python constants inside nested literals."""
        value = "${{'\"name\"': True, 'off': False, 'none': None}}"
        assert evaluate_value(value, Scope()) == {"name": True, "off": False, "none": None}

    def test_repr_string_with_interpolation(self):
        """Test that nested single-quoted strings are templates."""
        scope = Scope(variables={"local": {"env": "prod"}})
        assert evaluate_value("${['${local.env}-a', 'b']}", scope) == ["prod-a", "b"]

    def test_repr_for_and_conditional(self):
        """Test nested literals in for expressions and conditionals."""
        scope = Scope(functions={"length": len})
        assert evaluate_value("${[for n in ['a', 'b'] : n]}", scope) == ["a", "b"]
        assert evaluate_value("${{for k, v in {'x': 1} : k => v}}", scope) == {"x": 1}
        assert evaluate_value("${length(['a']) > 0 ? 'yes' : 'no'}", scope) == "yes"

    def test_repr_string_escapes(self):
        """Test escaped quotes inside single-quoted strings."""
        assert evaluate_value("${['it\\'s']}", Scope()) == ["it's"]


class TestTemplateDirectives:
    """Test cases for %{ } template directives."""

    def test_if_else(self):
        """Test both branches of an if directive."""
        template = "%{ if local.on }yes%{ else }no%{ endif }"
        assert evaluate_value(template, Scope(variables={"local": {"on": True}})) == "yes"
        assert evaluate_value(template, Scope(variables={"local": {"on": False}})) == "no"

    def test_if_without_else(self):
        """Test an if directive with no else branch."""
        template = "a%{ if local.on }-b%{ endif }"
        assert evaluate_value(template, Scope(variables={"local": {"on": False}})) == "a"

    def test_for_list(self):
        """Test a for directive over a list."""
        scope = Scope(variables={"local": {"names": ["a", "b"]}})
        assert evaluate_value("%{ for n in local.names }[${n}]%{ endfor }", scope) == "[a][b]"

    def test_for_map_with_key(self):
        """Test a for directive binding keys and values."""
        scope = Scope(variables={"local": {"tags": {"b": 2, "a": 1}}})
        template = "%{ for k, v in local.tags }${k}=${v},%{ endfor }"
        assert evaluate_value(template, scope) == "a=1,b=2,"

    def test_nested_directives(self):
        """Test an if directive inside a for directive."""
        scope = Scope(variables={"local": {"names": ["a", "skip", "b"]}})
        template = '%{ for n in local.names }%{ if n != "skip" }${n}%{ endif }%{ endfor }'
        assert evaluate_value(template, scope) == "ab"

    def test_strip_markers(self):
        """Test that ~ removes adjacent whitespace."""
        scope = Scope(variables={"local": {"names": ["a", "b"]}})
        template = "%{ for n in local.names ~}\n  ${n}\n%{~ endfor }"
        assert evaluate_value(template, scope) == "ab"

    def test_escaped_directive(self):
        """Test that %%{ is a literal %{."""
        assert evaluate_value("100%%{x}", Scope()) == "100%{x}"

    def test_unclosed_directive(self):
        """Test that a missing endif is reported."""
        with pytest.raises(EvaluationError) as exc_info:
            evaluate_value("%{ if true }x", Scope())
        assert "endif" in str(exc_info.value)

    def test_unknown_directive(self):
        """Test that an unknown directive keyword is rejected."""
        with pytest.raises(EvaluationError):
            evaluate_value("%{ while true }x", Scope())


class TestReferences:
    """Test cases for references function."""

    def test_collects_first_two_steps(self):
        """Test that references are truncated to two traversal steps."""
        refs = references("${dependency.vpc.outputs.vpc_id}-${local.name}")
        assert refs == ["dependency.vpc", "local.name"]

    def test_walks_nested_values(self):
        """Test references inside lists, maps and function calls."""
        value = {"a": ["${merge(local.x, include.root.inputs)}"], "b": "literal"}
        assert references(value) == ["local.x", "include.root"]

    def test_no_references(self):
        """Test that literals have no references."""
        assert references({"a": 1, "b": "text"}) == []
