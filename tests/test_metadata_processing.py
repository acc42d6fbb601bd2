import sys

import numpy as np
import pandas as pd
import pytest

from src.metadata_processing import (
    load_csv,
    load_table,
    export_table,
    standardize_column_names,
    rename_columns,
    select_columns,
    filter_rows,
    coerce_numeric,
    to_categorical,
    recode_values,
    coerce_types,
    check_unique_subjects,
    group_summary,
    count_table,
    compare_groups,
    compare_many,
    missingness
)


def test_load_csv_encoding(tmp_path):
    data = "\ufeffcol1,col2\n1,2\n"
    file = tmp_path / "bom.csv"
    file.write_text(data, encoding="utf-8")
    df = load_csv(str(file))
    assert list(df.columns) == ["col1", "col2"]
    assert df.loc[0, "col1"] == 1


def test_load_table_by_extension(tmp_path):
    df = pd.DataFrame({"Subject ID": ["P1", "P2"], "Age": [34, 51]})
    tsv = tmp_path / "meta.tsv"
    df.to_csv(tsv, sep="\t", index=False)
    xlsx = tmp_path / "meta.xlsx"
    df.to_excel(xlsx, index=False)
    assert load_table(str(tsv)).shape == (2, 2)
    assert load_table(str(xlsx))["Age"].tolist() == [34, 51]


def test_load_table_errors(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_table(str(tmp_path / "missing.csv"))
    empty = tmp_path / "empty.csv"
    empty.write_text("")
    with pytest.raises(ValueError):
        load_table(str(empty))
    odd = tmp_path / "table.xyz"
    odd.write_text("a,b\n1,2\n")
    with pytest.raises(ValueError):
        load_table(str(odd))


def test_export_table_creates_directory(tmp_path):
    df = pd.DataFrame({"a": [1, 2]})
    path = export_table(df, str(tmp_path / "out" / "table.tsv"))
    assert load_table(path)["a"].tolist() == [1, 2]


def test_cli_preview(tmp_path, capsys, monkeypatch):
    df = pd.DataFrame({"SampleID": ["S1"], "PatientID": ["P1"]})
    file = tmp_path / "qc.csv"
    df.to_csv(file, index=False)
    monkeypatch.setattr(sys, 'argv', ['utils.py', str(file)])
    from src.metadata_processing.utils import main
    main()
    captured = capsys.readouterr()
    assert "1 rows x 2 columns" in captured.out
    assert "S1" in captured.out
    assert "P1" in captured.out


def test_standardize_column_names():
    df = pd.DataFrame(columns=["Subject ID", "BMI (kg/m2)", "Sex"])
    assert standardize_column_names(df).columns.tolist() == ["subject_id", "bmi_kg_m2", "sex"]


def test_standardize_column_names_collision():
    df = pd.DataFrame(columns=["Age", "age "])
    with pytest.raises(ValueError):
        standardize_column_names(df)


def test_rename_and_select():
    df = pd.DataFrame({"a": [1], "b": [2], "c": [3]})
    renamed = rename_columns(df, {"a": "alpha"})
    assert "alpha" in renamed.columns
    with pytest.raises(KeyError):
        rename_columns(df, {"zzz": "alpha"})
    assert select_columns(df, ["c", "a"]).columns.tolist() == ["c", "a"]
    with pytest.raises(KeyError):
        select_columns(df, ["a", "zzz"])


def test_filter_rows():
    df = pd.DataFrame({"age": [20, 40, np.nan, 60], "sex": ["Male", "Female", "Female", None]})
    assert filter_rows(df, query="age > 30")["age"].tolist() == [40, 60]
    assert len(filter_rows(df, dropna_subset=["age", "sex"])) == 2


def test_coerce_numeric_with_caps():
    ages = pd.Series(["45", "90 or older", "unknown", None, 37], name="age")
    result = coerce_numeric(ages, caps={"90 or older": 90})
    assert result.iloc[0] == 45.0
    assert result.iloc[1] == 90.0
    assert np.isnan(result.iloc[2])
    assert np.isnan(result.iloc[3])
    assert result.iloc[4] == 37.0


def test_to_categorical_drops_unknown_levels():
    result = to_categorical(pd.Series(["low", "high", "medium", "huge"]),
                            categories=["low", "medium", "high"], ordered=True)
    assert result.cat.ordered
    assert result.isna().tolist() == [False, False, False, True]
    assert result.cat.codes.tolist() == [0, 2, 1, -1]


def test_recode_values():
    sex = pd.Series(["M", "f", " Female ", np.nan, "X"])
    mapping = {"m": "Male", "f": "Female", "female": "Female"}
    recoded = recode_values(sex, mapping)
    assert recoded.iloc[:3].tolist() == ["Male", "Female", "Female"]
    assert pd.isna(recoded.iloc[3])
    assert recoded.iloc[4] == "X"
    assert recode_values(sex, mapping, default="Other").iloc[4] == "Other"


def test_coerce_types():
    df = pd.DataFrame({"id": [" P1", "P2 "], "age": ["30", "n/a"], "sex": ["Male", "Female"]})
    out = coerce_types(df, {"id": "identifier", "age": "numeric", "sex": "category"})
    assert out["id"].tolist() == ["P1", "P2"]
    assert out["age"].iloc[0] == 30.0
    assert np.isnan(out["age"].iloc[1])
    assert isinstance(out["sex"].dtype, pd.CategoricalDtype)
    with pytest.raises(ValueError):
        coerce_types(df, {"age": "date"})


def test_check_unique_subjects():
    df = pd.DataFrame({"subject_id": ["P1", "P2", "P1"]})
    with pytest.raises(ValueError, match="P1"):
        check_unique_subjects(df, "subject_id")
    ok = pd.DataFrame({"subject_id": ["P1", "P2"]})
    assert check_unique_subjects(ok, "subject_id") is ok


def test_check_unique_subjects_missing_ids():
    df = pd.DataFrame({"subject_id": ["P1", None]})
    with pytest.raises(ValueError):
        check_unique_subjects(df, "subject_id")


def test_group_summary():
    df = pd.DataFrame({"sex": ["Male", "Male", "Female", "Female"], "age": [30, 50, 20, 40],
                       "bmi": [20.0, 30.0, 22.0, 24.0]})
    summary = group_summary(df, "sex", ["age", "bmi"])
    row = summary[(summary["sex"] == "Male") & (summary["variable"] == "age")].iloc[0]
    assert row["n"] == 2
    assert row["mean"] == pytest.approx(40.0)
    assert row["median"] == pytest.approx(40.0)
    assert row["min"] == 30
    assert row["max"] == 50
    assert len(summary) == 4


def test_count_table():
    df = pd.DataFrame({"smoker": ["yes", "no", "no", "yes"], "sex": ["Male", "Male", "Female", "Female"]})
    counts = count_table(df, "smoker", "sex")
    assert counts.loc["All", "All"] == 4
    pct = count_table(df, "smoker", "sex", normalize=True)
    assert pct["Male"].sum() == pytest.approx(100.0)


def test_compare_groups():
    df = pd.DataFrame({"group": ["a"] * 5 + ["b"] * 5, "value": [1, 2, 3, 4, 5, 11, 12, 13, 14, 15]})
    result = compare_groups(df, "value", "group")
    assert result["groups"] == ["a", "b"]
    assert result["means"] == [3, 13]
    assert result["pvalue"] < 0.05
    welch = compare_groups(df, "value", "group", test="t-test")
    assert welch["pvalue"] < 0.05


def test_compare_groups_requires_enough_data():
    df = pd.DataFrame({"group": ["a", "a", "b", "b"], "value": [1, 2, 3, 4]})
    with pytest.raises(ValueError):
        compare_groups(df, "value", "group")
    three = pd.DataFrame({"group": ["a", "b", "c"] * 3, "value": range(9)})
    with pytest.raises(ValueError):
        compare_groups(three, "value", "group")


def test_compare_many_adjusts_p_values():
    df = pd.DataFrame({
        "group": ["a"] * 5 + ["b"] * 5,
        "x": [1, 2, 3, 4, 5, 11, 12, 13, 14, 15],
        "y": [1, 5, 2, 4, 3, 2, 4, 1, 5, 3],
    })
    results = compare_many(df, ["x", "y"], "group")
    assert results["variable"].tolist()[0] == "x"
    assert (results["padj"] >= results["p_value"]).all()


def test_missingness():
    df = pd.DataFrame({"a": [1, None, 3, None], "b": [1, 2, 3, 4]})
    result = missingness(df)
    assert result.loc["a", "n_missing"] == 2
    assert result.loc["a", "fraction_missing"] == 0.5
    assert result.loc["b", "n_missing"] == 0


def test_load_table_passes_reader_options(tmp_path):
    file = tmp_path / "ids.csv"
    file.write_text("sample,depth\n001,10\n10317.000010,20\n")
    df = load_table(str(file), dtype={"sample": str})
    assert df["sample"].tolist() == ["001", "10317.000010"]
    assert load_table(str(file), nrows=0).columns.tolist() == ["sample", "depth"]
