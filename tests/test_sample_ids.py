from sample_ids import (
    DEFAULT_RULES,
    HYPHENS,
    RUN_PREFIX,
    IdResolver,
    canonical_id,
    make_unique,
    normalise_sample_id,
)


def test_canonical_id_strips_run_read_and_batch_tokens():
    name = "runB69PP_BMI_Plate37WellA12_16S_B69PP_R1.fastq.gz"
    assert canonical_id(name) == "BMI_Plate37WellA12"


def test_canonical_id_handles_illumina_lane_suffix_and_hyphens():
    assert canonical_id("runC1_BMI-Plate2WellB3_ITS_C1_R2_001.fastq") == "BMI_Plate2WellB3"


def test_canonical_id_custom_rule_order():
    # Without the hyphen rule the hyphen survives.
    rules = [r for r in DEFAULT_RULES if r is not HYPHENS]
    assert canonical_id("runA_x-y_R1.fq", rules) == "x-y"
    assert canonical_id("runA_x-y_R1.fq", [RUN_PREFIX]) == "x-y_R1.fq"


def test_canonical_id_leaves_plain_ids_alone():
    assert canonical_id("BMI_Plate37WellA12") == "BMI_Plate37WellA12"


def test_make_unique_suffixes_repeats_in_order():
    assert make_unique(["a", "b", "a", "a"]) == ["a", "b", "a.1", "a.2"]


def test_make_unique_avoids_existing_labels():
    out = make_unique(["a", "a", "a.1"])
    assert len(set(out)) == 3
    assert out[0] == "a" and out[2] == "a.1"


def test_make_unique_is_idempotent():
    once = make_unique(["s1", "s1", "s2", "s1"])
    assert make_unique(once) == once


def test_normalise_sample_id():
    assert normalise_sample_id(" my sample(2) ") == "my_sample.2"
    assert normalise_sample_id("a/b=c") == "a_b_c"


def test_resolver_maps_hyphenated_keys():
    resolver = IdResolver({"BMI-Plate37WellA12": "CPER_001-M-20170601"})
    assert resolver.lookup("runB69PP_BMI_Plate37WellA12_16S_B69PP_R1.fastq.gz") == "CPER_001-M-20170601"


def test_resolver_requires_exact_canonical_match():
    resolver = IdResolver({"BMI_Plate1WellA1": "SOIL-A1"})
    labels, report = resolver.resolve(["BMI_Plate1WellA1_rep2", "BMI_Plate1WellA1"])
    assert labels == ["BMI_Plate1WellA1_rep2", "SOIL-A1"]
    assert report.failures == ["BMI_Plate1WellA1_rep2"]
    assert resolver.lookup("BMI_Plate1WellA12") is None


def test_resolve_reports_failures_and_keeps_order():
    resolver = IdResolver({"lab1": "S1", "lab2": "S2"})
    labels, report = resolver.resolve(["lab2", "unknown", "lab1"])
    assert labels == ["S2", "unknown", "S1"]
    assert report.resolved == 2
    assert report.failures == ["unknown"]


def test_resolve_suffixes_collisions():
    resolver = IdResolver({"lab1": "S1", "lab1b": "S1"})
    labels, report = resolver.resolve(["lab1", "lab1b"])
    assert labels == ["S1", "S1.1"]
    assert report.collisions == {"S1": ["lab1", "lab1b"]}
