"""
Unit tests for KO to KEGG pathway conversion.
"""
from unittest.mock import MagicMock

import numpy as np
import pandas as pd
import pytest

from picrust2_tools.errors import InvalidInput
from picrust2_tools.picrust2.ko_conversion import ko2kegg_abundance
from picrust2_tools.picrust2.reference_data import (
    classify_feature_id,
    load_ko_to_kegg_mapping,
    read_mapping_file,
    to_map_id,
)


class TestReferenceData:
    """Test identifier helpers and bundled tables."""

    @pytest.mark.parametrize("feature_id, kind", [
        ("K00134", "KO"),
        ("map00010", "KEGG_PATHWAY"),
        ("ko00010", "KEGG_PATHWAY"),
        ("EC:1.1.1.27", "EC"),
        ("PWY-7219", "MetaCyc"),
    ])
    def test_classify_feature_id(self, feature_id, kind):
        assert classify_feature_id(feature_id) == kind

    def test_to_map_id(self):
        assert to_map_id("ko00010") == "map00010"
        assert to_map_id("path:map00020") == "map00020"
        assert to_map_id("map00030") == "map00030"

    def test_mapping_is_a_copy(self):
        mapping = load_ko_to_kegg_mapping()
        mapping.loc[:, "ko"] = "changed"
        assert (load_ko_to_kegg_mapping()["ko"] != "changed").all()

    def test_read_mapping_with_header(self, tmp_path):
        path = tmp_path / "mapping.tsv"
        path.write_text("pathway\tko\nko09999\tK00134\nmap09999\tK00134\nmap09998\tnot_a_ko\n")
        mapping = read_mapping_file(str(path))
        assert list(mapping.columns) == ["pathway", "ko"]
        assert list(zip(mapping["pathway"], mapping["ko"])) == [("map09999", "K00134")]

    def test_read_kegg_link_dump(self, tmp_path):
        path = tmp_path / "link_pathway_ko.txt"
        path.write_text("path:map09999\tko:K00134\npath:ko09999\tko:K00134\nko:K01810\tpath:map09998\n")
        mapping = read_mapping_file(str(path))
        assert set(zip(mapping["pathway"], mapping["ko"])) == {("map09999", "K00134"), ("map09998", "K01810")}

    def test_read_mapping_missing_file(self, tmp_path):
        with pytest.raises(InvalidInput):
            read_mapping_file(str(tmp_path / "absent.tsv"))

    def test_read_mapping_without_pairs(self, tmp_path):
        path = tmp_path / "mapping.tsv"
        path.write_text("a\tb\nx\ty\n")
        with pytest.raises(InvalidInput):
            read_mapping_file(str(path))


class TestKo2Kegg:
    """Test KO abundance conversion."""

    def test_pathway_sums(self, ko_abundance):
        result = ko2kegg_abundance(ko_abundance)
        pathways = result.abundance

        # K00134 -> map00010 only; K01810 -> map00010, map00030, map00500, map00520
        assert pathways.loc["map00010", "S1"] == 15.0
        assert pathways.loc["map00030", "S1"] == 5.0
        assert set(pathways.index) == {"map00010", "map00030", "map00500", "map00520"}

    def test_unmapped_rows_reported(self, ko_abundance):
        result = ko2kegg_abundance(ko_abundance)
        assert result.n_unmapped == 2
        assert set(result.unmapped_features) == {"K99999", "EC:1.1.1.27"}

    def test_abundance_conservation(self, ko_abundance):
        """Column sums equal mapped KO abundance weighted by pathway membership."""
        mapping = load_ko_to_kegg_mapping()
        result = ko2kegg_abundance(ko_abundance)
        membership = mapping["ko"].value_counts()
        mapped = ko_abundance.loc[["K00134", "K01810"]]
        expected = mapped.mul(membership.reindex(mapped.index), axis=0).sum()
        np.testing.assert_allclose(result.abundance.sum().values, expected.values)

    def test_input_not_mutated(self, ko_abundance):
        before = ko_abundance.copy()
        ko2kegg_abundance(ko_abundance)
        pd.testing.assert_frame_equal(ko_abundance, before)

    def test_custom_mapping(self, ko_abundance):
        mapping = pd.DataFrame({"pathway": ["ko09999", "ko09999"], "ko": ["K00134", "K01810"]})
        result = ko2kegg_abundance(ko_abundance, mapping=mapping)
        assert list(result.abundance.index) == ["map09999"]
        assert result.abundance.loc["map09999", "S2"] == 20.0

    def test_nothing_maps(self):
        df = pd.DataFrame({"S1": [1.0], "S2": [2.0]}, index=["K99999"])
        with pytest.raises(InvalidInput):
            ko2kegg_abundance(df)

    def test_negative_values(self, ko_abundance):
        df = ko_abundance.copy()
        df.iloc[0, 0] = -1
        with pytest.raises(InvalidInput):
            ko2kegg_abundance(df)

    def test_empty_input(self):
        with pytest.raises(InvalidInput):
            ko2kegg_abundance(pd.DataFrame())

    def test_no_input(self):
        with pytest.raises(InvalidInput):
            ko2kegg_abundance()

    def test_read_from_file(self, ko_abundance, tmp_path):
        path = tmp_path / "pred_metagenome_unstrat.tsv"
        ko_abundance.to_csv(path, sep="\t", index_label="function")
        result = ko2kegg_abundance(file=str(path))
        assert result.abundance.loc["map00010", "S3"] == 18.0

    def test_missing_kos_linked_through_client(self, ko_abundance):
        client = MagicMock()
        client.link_pathways.return_value = (pd.DataFrame({"pathway": ["map09999"], "ko": ["K99999"]}), [])
        result = ko2kegg_abundance(ko_abundance, client=client)
        assert list(client.link_pathways.call_args.args[0]) == ["K99999"]
        assert result.abundance.loc["map09999", "S1"] == 7.0
        assert result.unmapped_features == ["EC:1.1.1.27"]
        assert result.warnings == []

    def test_link_warnings_reported(self, ko_abundance):
        client = MagicMock()
        client.link_pathways.return_value = (pd.DataFrame(columns=["pathway", "ko"]),
                                             ["KEGG link failed for K99999: down"])
        result = ko2kegg_abundance(ko_abundance, client=client)
        assert "K99999" in result.unmapped_features
        assert result.warnings == ["KEGG link failed for K99999: down"]

    def test_offline_by_default(self, ko_abundance):
        assert ko2kegg_abundance(ko_abundance).warnings == []
