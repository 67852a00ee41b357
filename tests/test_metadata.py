"""
Unit tests for metadata reading and sample alignment.
"""
import pandas as pd
import pytest

from picrust2_tools.analysis.metadata import (
    align_samples,
    detect_sample_id_column,
    read_and_process_metadata,
)
from picrust2_tools.errors import InvalidInput


class TestDetectSampleIdColumn:

    def test_common_name(self, two_group_metadata):
        assert detect_sample_id_column(two_group_metadata) == "sample_name"

    def test_falls_back_to_first_column(self):
        md = pd.DataFrame({"run": ["a", "b"], "Group": ["x", "y"]})
        assert detect_sample_id_column(md) == "run"

    def test_explicit_missing(self, two_group_metadata):
        with pytest.raises(InvalidInput):
            detect_sample_id_column(two_group_metadata, "nope")


class TestAlignSamples:

    def test_aligns_to_metadata_order(self, pathway_abundance, two_group_metadata):
        shuffled = pathway_abundance[["S6", "S1", "S4", "S2", "S5", "S3"]]
        aligned = align_samples(shuffled, two_group_metadata, "Environment")
        assert list(aligned.abundance.columns) == ["S1", "S2", "S3", "S4", "S5", "S6"]
        assert list(aligned.groups) == ["Forest"] * 3 + ["Desert"] * 3

    def test_extra_samples_dropped(self, pathway_abundance, two_group_metadata):
        md = pd.concat([two_group_metadata,
                        pd.DataFrame({"sample_name": ["S99"], "Environment": ["Forest"]})])
        aligned = align_samples(pathway_abundance.drop(columns=["S6"]), md, "Environment")
        assert "S99" not in aligned.abundance.columns
        assert aligned.abundance.shape[1] == 5

    def test_missing_group_column(self, pathway_abundance, two_group_metadata):
        with pytest.raises(InvalidInput):
            align_samples(pathway_abundance, two_group_metadata, "Treatment")

    def test_duplicate_sample_ids(self, pathway_abundance, two_group_metadata):
        md = two_group_metadata.copy()
        md.loc[1, "sample_name"] = "S1"
        with pytest.raises(InvalidInput):
            align_samples(pathway_abundance, md, "Environment")

    def test_no_shared_samples(self, pathway_abundance, two_group_metadata):
        md = two_group_metadata.assign(sample_name=[f"X{i}" for i in range(6)])
        with pytest.raises(InvalidInput):
            align_samples(pathway_abundance, md, "Environment")

    def test_single_level(self, pathway_abundance, two_group_metadata):
        md = two_group_metadata.assign(Environment="Forest")
        with pytest.raises(InvalidInput):
            align_samples(pathway_abundance, md, "Environment")

    def test_missing_group_values_dropped(self, pathway_abundance, two_group_metadata):
        md = two_group_metadata.copy()
        md.loc[0, "Environment"] = None
        aligned = align_samples(pathway_abundance, md, "Environment")
        assert "S1" not in aligned.abundance.columns


class TestReadMetadata:

    def test_reads_tsv(self, two_group_metadata, tmp_path):
        path = tmp_path / "metadata.tsv"
        two_group_metadata.to_csv(path, sep="\t", index=False)
        df = read_and_process_metadata(str(path))
        assert df["sample_name"].tolist() == two_group_metadata["sample_name"].tolist()
        assert df["Environment"].tolist() == two_group_metadata["Environment"].tolist()

    def test_reads_csv(self, two_group_metadata, tmp_path):
        path = tmp_path / "metadata.csv"
        two_group_metadata.to_csv(path, index=False)
        df = read_and_process_metadata(str(path))
        assert list(df.columns) == ["sample_name", "Environment"]

    def test_missing_file(self, tmp_path):
        with pytest.raises(InvalidInput):
            read_and_process_metadata(str(tmp_path / "missing.csv"))
