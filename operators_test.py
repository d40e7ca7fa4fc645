"""
Operator semantics, evaluated end to end against the shared ``frame`` fixture:

    x     = [1, 2, null, 4, 5]
    y     = [10, 20, 30, 40, 50]
    z     = [0.5, -1, 0, 2, NaN]
    label = ['a', 'b', 'a', null, 'c']
    flag  = [true, false, true, null, false]
"""

import math

import pytest

from tabular_dag import (
    Add, BoolToStr, CmpArith, CmpStr, ColumnType, Count, DagBuilder, DagEvaluator,
    DataFrameProvider, Div, Full, Gt, Head, Id, If, Loc, Log, Mean, Median, Mode,
    Mul, Nan, Not, Null, Project, Sub, Sum, Var, Where, Zip,
)


def values(output, position=0):
    assert output.ok, output.error
    return output.value[position].values()


def error_kind(output):
    assert not output.ok
    return output.error.kind.value


class TestSelection:

    def test_id_renames(self, run):
        (out,) = run(Id([Loc('x'), Loc('y')], ['a', 'b']))
        assert [c.name for c in out.value] == ['a', 'b']
        assert out.value[1].values() == [10.0, 20.0, 30.0, 40.0, 50.0]

    def test_head(self, run):
        short, long_ = run(Head([Loc('x')], 2), Head([Loc('y')], 10))
        assert values(short) == [1.0, 2.0]
        assert len(values(long_)) == 5

    def test_project_by_name(self, run):
        (out,) = run(Project(Id([Loc('x'), Loc('y')]), ['y']))
        assert [c.name for c in out.value] == ['y']
        assert values(out) == [10.0, 20.0, 30.0, 40.0, 50.0]

    def test_project_unknown_name(self, run):
        (out,) = run(Project(Id([Loc('x')]), ['nope']))
        assert error_kind(out) == 'UnknownColumn'

    def test_zip_then_project_fields(self, run):
        zipped = Zip([Loc('x'), Loc('label')])
        record, field = run(zipped, Project(zipped, ['label']))
        assert record.value[0].dtype is ColumnType.RECORD
        assert values(record)[0] == {'x': 1.0, 'label': 'a'}
        assert values(field) == ['a', 'b', 'a', None, 'c']

    def test_zip_row_count_mismatch(self, run):
        (out,) = run(Zip([Head([Loc('x')], 2), Loc('y')]))
        assert error_kind(out) == 'RowCountMismatch'

    def test_loc_unknown_column_reports_node(self, run):
        (out,) = run(Id([Loc('nope')]))
        assert error_kind(out) == 'UnknownColumn'
        assert out.error.node_index == 0
        assert out.error.op == 'Loc'

    def test_loc_cannot_be_an_output(self, run):
        (out,) = run(Loc('x'))
        assert error_kind(out) == 'InvalidOutput'

    def test_output_name_override(self, run):
        renamed, wrong = run(Mean([Loc('x')], names=['mx']),
                             Mean([Loc('x'), Loc('y')], names=['only']))
        assert renamed.value[0].name == 'mx'
        assert error_kind(wrong) == 'ArityMismatch'


class TestAggregates:

    def test_count_includes_nulls(self, run):
        (out,) = run(Count([Loc('x')]))
        assert values(out) == [5.0]

    def test_mean_median_sum_skip_nulls(self, run):
        mean, median, total = run(Mean([Loc('x')]), Median([Loc('x')]), Sum([Loc('x')]))
        assert values(mean) == [3.0]
        assert values(median) == [3.0]
        assert values(total) == [12.0]

    def test_mean_of_string_column(self, run):
        (out,) = run(Mean([Loc('label')]))
        assert error_kind(out) == 'NonNumericColumn'

    def test_sample_variance(self, run):
        sample, population = run(Var([Loc('y')]), Var([Loc('y')], ddof=0))
        assert values(sample) == [pytest.approx(250.0)]
        assert values(population) == [pytest.approx(200.0)]

    def test_variance_needs_two_rows(self, run):
        (out,) = run(Var([Head([Loc('y')], 1)]))
        assert error_kind(out) == 'InsufficientRows'

    def test_mode_of_strings(self, run):
        (out,) = run(Mode([Loc('label')]))
        assert values(out) == ['a']

    def test_mode_ties_break_by_first_occurrence(self):
        provider = DataFrameProvider.from_dict({'v': ['b', 'a', 'b', 'a'], 'w': [3.0, 1.0, 2.0, 1.0]})
        dag, _ = DagBuilder().add(Mode([Loc('v')])).add(Mode([Loc('w')])).build()
        strings, floats = DagEvaluator(provider).evaluate(dag)
        assert values(strings) == ['b']
        assert values(floats) == [1.0]

    def test_mode_dropna(self):
        provider = DataFrameProvider.from_dict({'v': [None, None, 'a']})
        dag, _ = DagBuilder().add(Mode([Loc('v')])).add(Mode([Loc('v')], dropna=False)).build()
        dropped, kept = DagEvaluator(provider).evaluate(dag)
        assert values(dropped) == ['a']
        assert values(kept) == [None]


class TestArithmetic:

    def test_binary_add_propagates_nulls(self, run):
        (out,) = run(Add([Loc('x'), Loc('y')]))
        assert values(out) == [11.0, 22.0, None, 44.0, 55.0]

    def test_scalar_forms(self, run):
        sub, mul = run(Sub([Loc('y')], 10.0), Mul([Loc('x'), Loc('y')], 2.0))
        assert values(sub) == [0.0, 10.0, 20.0, 30.0, 40.0]
        assert values(mul, 0) == [2.0, 4.0, None, 8.0, 10.0]
        assert values(mul, 1) == [20.0, 40.0, 60.0, 80.0, 100.0]

    def test_division_by_zero_is_ieee(self, run):
        (out,) = run(Div([Loc('y')], 0.0))
        assert all(math.isinf(v) and v > 0 for v in values(out))

    def test_row_count_mismatch(self, run):
        (out,) = run(Add([Head([Loc('x')], 2), Loc('y')]))
        assert error_kind(out) == 'RowCountMismatch'

    def test_non_numeric_operand(self, run):
        (out,) = run(Add([Loc('x'), Loc('label')]))
        assert error_kind(out) == 'NonNumericColumn'

    def test_log_of_non_positive_is_nan(self, run):
        (out,) = run(Log([Loc('z')]))
        result = values(out)
        assert result[0] == pytest.approx(math.log(0.5))
        assert math.isnan(result[1])
        assert math.isnan(result[2])
        assert result[3] == pytest.approx(math.log(2.0))
        assert math.isnan(result[4])


class TestPredicates:

    def test_gt(self, run):
        (out,) = run(Gt(Loc('y'), Loc('x')))
        assert values(out) == [True, True, None, True, True]

    def test_gt_type_mismatch(self, run):
        (out,) = run(Gt(Loc('x'), Loc('label')))
        assert error_kind(out) == 'TypeMismatch'

    def test_cmp_arith(self, run):
        ge, lt = run(CmpArith([Loc('y')], 30.0, 'GE'), CmpArith([Loc('x')], 2.0, 'LT'))
        assert values(ge) == [False, False, True, True, True]
        assert values(lt) == [True, False, None, False, False]

    def test_cmp_str(self, run):
        equal, wrong = run(CmpStr([Loc('label')], 'a'), CmpStr([Loc('y')], 'a'))
        assert values(equal) == [True, False, True, None, False]
        assert error_kind(wrong) == 'TypeMismatch'

    def test_where_replaces_failing_rows(self, run):
        (out,) = run(Where([Loc('y')], 30.0, 'LT', '0'))
        assert values(out) == [10.0, 20.0, 0.0, 0.0, 0.0]

    def test_where_keeps_nulls(self, run):
        (out,) = run(Where([Loc('x')], 3.0, 'LT', '-1'))
        assert values(out) == [1.0, 2.0, None, -1.0, -1.0]

    def test_where_uncoercible_replacement(self, run):
        (out,) = run(Where([Loc('y')], 30.0, 'LT', 'abc'))
        assert error_kind(out) == 'TypeMismatch'

    @pytest.mark.parametrize("mode, expected", [
        ('LT', [True, True, True, False, False]),
        ('LE', [True, True, True, False, False]),
        ('EQ', [False, False, False, False, False]),
        ('GE', [False, False, False, True, False]),
        ('GT', [False, False, False, True, False]),
    ])
    def test_cmp_arith_nan_rows_are_false(self, run, mode, expected):
        (out,) = run(CmpArith([Loc('z')], 1.0, mode))
        assert values(out) == expected

    def test_cmp_arith_against_nan_scalar(self, run):
        equal, less = run(CmpArith([Loc('z')], float('nan'), 'EQ'), CmpArith([Loc('x')], float('nan'), 'LT'))
        assert values(equal) == [False] * 5
        assert values(less) == [False, False, None, False, False]

    def test_gt_with_nan_on_either_side(self, run):
        left, right = run(Gt(Loc('z'), Loc('y')), Gt(Loc('y'), Loc('z')))
        assert values(left) == [False] * 5
        assert values(right) == [True, True, True, True, False]

    def test_where_replaces_nan_rows(self, run):
        (out,) = run(Where([Loc('z')], 1.0, 'GT', '3.0'))
        assert values(out) == [3.0, 3.0, 3.0, 2.0, 3.0]

    def test_if_selects_rows(self, run):
        (out,) = run(If([Loc('flag'), Loc('x'), Loc('y')]))
        assert values(out) == [1.0, 20.0, None, None, 50.0]

    def test_if_condition_must_be_boolean(self, run):
        (out,) = run(If([Loc('x'), Loc('x'), Loc('y')]))
        assert error_kind(out) == 'TypeMismatch'

    def test_if_branches_must_agree(self, run):
        (out,) = run(If([Loc('flag'), Loc('x'), Loc('label')]))
        assert error_kind(out) == 'TypeMismatch'

    def test_if_row_alignment(self, run):
        (out,) = run(If([Head([Loc('flag')], 2), Loc('x'), Loc('y')]))
        assert error_kind(out) == 'RowCountMismatch'

    def test_null_and_nan_checks(self, run):
        nulls, nans, nans_of_x = run(Null([Loc('x')]), Nan([Loc('z')]), Nan([Loc('x')]))
        assert values(nulls) == [False, False, True, False, False]
        assert values(nans) == [False, False, False, False, True]
        assert values(nans_of_x) == [False] * 5

    def test_not(self, run):
        negated, wrong = run(Not([Loc('flag')]), Not([Loc('x')]))
        assert values(negated) == [False, True, False, None, True]
        assert error_kind(wrong) == 'TypeMismatch'

    def test_bool_to_str(self, run):
        (out,) = run(BoolToStr([Loc('flag')]))
        assert values(out) == ['1', '0', '1', None, '0']


class TestFull:

    def test_numeric_constant(self, run):
        (out,) = run(Full(7.0, [Loc('x')]))
        assert out.value[0].name == 'x'
        assert values(out) == [7.0] * 5

    def test_string_and_boolean_constants(self, run):
        text, flag = run(Full('k', [Loc('label')]), Full(True, [Loc('y')]))
        assert values(text) == ['k'] * 5
        assert flag.value[0].dtype is ColumnType.BOOLEAN
