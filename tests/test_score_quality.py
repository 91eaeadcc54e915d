"""
Data quality scorer tests: the pure Python scorer and its Spark twin.
"""

from datetime import date

from multisource_mdm.pipelines.reconciliation import load_quality_rules
from multisource_mdm.pipelines.reconciliation.gold.score_quality import (
    QualityRule,
    assess,
    issues,
    quality_issues_column,
    quality_score_column,
    score,
)

COMPLETE_VETERAN = {
    "master_id": "123456789",
    "first_name": "JOHN",
    "last_name": "SMITH",
    "date_of_birth": date(1980, 5, 1),
    "email": "john@new.com",
    "phone": "5559876543",
    "state": "TX",
    "disability_rating": 50,
}


def test_complete_record_scores_100():
    rules = load_quality_rules("veteran")

    assert score(COMPLETE_VETERAN, rules) == 100
    assert issues(COMPLETE_VETERAN, rules) == []


def test_missing_required_field_lowers_score_and_adds_one_issue():
    rules = load_quality_rules("veteran")
    incomplete = dict(COMPLETE_VETERAN, first_name=None)

    full_score, full_issues = assess(COMPLETE_VETERAN, rules)
    lower_score, lower_issues = assess(incomplete, rules)

    assert lower_score == full_score - 15
    assert lower_issues == full_issues + ["MISSING_FIRST_NAME"]


def test_blank_string_counts_as_missing():
    rules = load_quality_rules("veteran")
    record = dict(COMPLETE_VETERAN, last_name="   ")

    assert "MISSING_LAST_NAME" in issues(record, rules)
    assert score(record, rules) == 85


def test_present_but_invalid_values_are_tagged_invalid():
    rules = load_quality_rules("veteran")
    record = dict(COMPLETE_VETERAN, email="not-an-email", disability_rating=130, state="Texas")

    assert issues(record, rules) == ["INVALID_EMAIL", "INVALID_STATE", "INVALID_DISABILITY_RATING"]
    assert score(record, rules) == 100 - 10 - 5 - 10


def test_score_is_capped_at_100():
    rules = [QualityRule("a", 80), QualityRule("b", 80)]

    assert score({"a": 1, "b": 2}, rules) == 100


def test_explicit_issue_text_replaces_generated_tag():
    rules = [QualityRule("npi", 100, check="pattern", pattern=r"^[0-9]{10}$", issue="BAD_NPI")]

    assert issues({"npi": None}, rules) == ["BAD_NPI"]
    assert issues({"npi": "12"}, rules) == ["BAD_NPI"]


def test_one_of_check():
    rules = [QualityRule("specialty", 100, check="one_of", values=["PSYCHIATRY", "NEUROLOGY"])]

    assert score({"specialty": "NEUROLOGY"}, rules) == 100
    assert issues({"specialty": "DENTISTRY"}, rules) == ["INVALID_SPECIALTY"]


def test_spark_columns_agree_with_python_scorer(spark):
    rules = load_quality_rules("veteran")
    records = [
        COMPLETE_VETERAN,
        dict(COMPLETE_VETERAN, first_name=None, email="bad"),
        dict(COMPLETE_VETERAN, last_name=" ", phone=None, disability_rating=-1),
        dict(COMPLETE_VETERAN, master_id="12345", state=None),
    ]
    schema = (
        "master_id string, first_name string, last_name string, date_of_birth date, "
        "email string, phone string, state string, disability_rating int"
    )
    columns = [name.split()[0] for name in schema.split(", ")]
    df = spark.createDataFrame([tuple(r[c] for c in columns) for r in records], schema)

    scored = (
        df.withColumn("dq_score", quality_score_column(rules))
          .withColumn("dq_issues", quality_issues_column(rules))
          .collect()
    )

    expected = sorted(assess(r, rules) for r in records)
    actual = sorted((row["dq_score"], list(row["dq_issues"])) for row in scored)
    assert actual == expected


def test_spark_columns_without_rules(spark):
    df = spark.createDataFrame([("x",)], "master_id string")
    row = df.select(quality_score_column([]).alias("s"), quality_issues_column([]).alias("i")).first()

    assert row["s"] == 0
    assert list(row["i"]) == []
