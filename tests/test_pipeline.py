"""
Tests for the one-call pipeline and the command line entry points.
"""
from unittest.mock import MagicMock

import numpy as np
import pandas as pd
import pytest
from matplotlib.figure import Figure

from picrust2_tools.cli import convert_cli, daa_cli, main_cli
from picrust2_tools.core.pipeline import run_pathway_pipeline
from picrust2_tools.errors import InvalidInput


@pytest.fixture
def ko_table():
    """KO abundance where K00134 (map00010 only) is much higher in Forest."""
    rng = np.random.default_rng(3)
    kos = ["K00134", "K01810", "K00844", "K00845", "K00016"]
    values = rng.poisson(300, size=(len(kos), 6)).astype(float)
    values[0, :3] = [3000, 3100, 2900]
    return pd.DataFrame(values, index=kos, columns=[f"S{i}" for i in range(1, 7)])


class TestRunPathwayPipeline:

    def test_ko_to_kegg_workflow(self, ko_table, two_group_metadata):
        client = MagicMock()
        result = run_pathway_pipeline(two_group_metadata, "Environment", data=ko_table,
                                      daa_method="LinDA", ko_to_kegg=True, client=client)
        assert len(result.plots) == 1
        entry = result.plots[0]
        assert set(entry["results"]["method"]) == {"LinDA"}
        assert entry["plot"] is None or isinstance(entry["plot"], Figure)
        assert result.daa_results["pathway_name"].notna().all()
        client.fetch.assert_not_called()

    def test_one_entry_per_method_label(self, ko_table, two_group_metadata):
        result = run_pathway_pipeline(two_group_metadata, "Environment", data=ko_table,
                                      daa_method="ALDEx2", ko_to_kegg=True, client=MagicMock())
        labels = [entry["results"]["method"].iloc[0] for entry in result.plots]
        assert labels == ["ALDEx2_Welch's t test", "ALDEx2_Wilcoxon rank test"]

    def test_ko_descriptions_without_conversion(self, ko_table, two_group_metadata):
        result = run_pathway_pipeline(two_group_metadata, "Environment", data=ko_table,
                                      daa_method="metagenomeSeq")
        names = result.daa_results.set_index("feature")["pathway_name"]
        assert names["K00844"] == "HK; hexokinase [EC:2.7.1.1]"
        assert result.warnings == []

    def test_reads_files(self, ko_table, two_group_metadata, tmp_path):
        abundance_path = tmp_path / "pred_metagenome_unstrat.tsv"
        metadata_path = tmp_path / "metadata.tsv"
        ko_table.to_csv(abundance_path, sep="\t", index_label="function")
        two_group_metadata.to_csv(metadata_path, sep="\t", index=False)
        result = run_pathway_pipeline(str(metadata_path), "Environment", file=str(abundance_path),
                                      daa_method="LinDA", ko_to_kegg=True, client=MagicMock())
        assert not result.daa_results.empty

    def test_kegg_link_warnings_returned(self, ko_table, two_group_metadata):
        table = pd.concat([ko_table, pd.DataFrame([ko_table.iloc[1].values], index=["K99999"],
                                                  columns=ko_table.columns)])
        client = MagicMock()
        client.link_pathways.return_value = (pd.DataFrame(columns=["pathway", "ko"]),
                                             ["KEGG link failed for K99999: down"])
        result = run_pathway_pipeline(two_group_metadata, "Environment", data=table, daa_method="LinDA",
                                      ko_to_kegg=True, kegg_link=True, client=client)
        assert list(client.link_pathways.call_args.args[0]) == ["K99999"]
        assert "KEGG link failed for K99999: down" in result.warnings

    def test_needs_abundance(self, two_group_metadata):
        with pytest.raises(InvalidInput):
            run_pathway_pipeline(two_group_metadata, "Environment")

    def test_ko_to_kegg_requires_ko(self, ko_table, two_group_metadata):
        with pytest.raises(InvalidInput):
            run_pathway_pipeline(two_group_metadata, "Environment", data=ko_table,
                                 pathway="EC", ko_to_kegg=True)


class TestCli:

    def test_main_help(self, capsys):
        assert main_cli.main([]) == 0
        assert "picrust2-tools" in capsys.readouterr().out

    def test_unknown_command(self):
        assert main_cli.main(["frobnicate"]) == 1

    def test_convert(self, ko_table, tmp_path):
        src = tmp_path / "ko.tsv"
        out = tmp_path / "out" / "kegg.tsv"
        ko_table.to_csv(src, sep="\t", index_label="function")
        assert main_cli.main(["convert", "--input", str(src), "--output", str(out)]) == 0
        converted = pd.read_csv(out, sep="\t", index_col=0)
        assert "map00010" in converted.index

    def test_convert_with_mapping_file(self, ko_table, tmp_path):
        src = tmp_path / "ko.tsv"
        mapping = tmp_path / "link.txt"
        out = tmp_path / "kegg.tsv"
        ko_table.to_csv(src, sep="\t", index_label="function")
        mapping.write_text("path:map09999\tko:K00134\n")
        assert convert_cli.main(["--input", str(src), "--output", str(out), "--mapping-file", str(mapping)]) == 0
        converted = pd.read_csv(out, sep="\t", index_col=0)
        assert list(converted.index) == ["map09999"]

    def test_convert_bad_mapping_file(self, ko_table, tmp_path):
        src = tmp_path / "ko.tsv"
        ko_table.to_csv(src, sep="\t", index_label="function")
        code = convert_cli.main(["--input", str(src), "--output", str(tmp_path / "x.tsv"),
                                 "--mapping-file", str(tmp_path / "absent.txt")])
        assert code == 1

    def test_convert_missing_input(self, tmp_path):
        assert convert_cli.main(["--input", str(tmp_path / "nope.tsv"), "--output", str(tmp_path / "x.tsv")]) == 1

    def test_daa_writes_results(self, ko_table, two_group_metadata, tmp_path):
        src = tmp_path / "ko.tsv"
        md = tmp_path / "metadata.csv"
        ko_table.to_csv(src, sep="\t", index_label="function")
        two_group_metadata.to_csv(md, index=False)
        out_dir = tmp_path / "daa"
        code = daa_cli.main(["--abundance-file", str(src), "--metadata-file", str(md),
                             "--group-col", "Environment", "--methods", "LinDA,metagenomeSeq",
                             "--output-dir", str(out_dir)])
        assert code == 0
        assert (out_dir / "LinDA_results.csv").exists()
        assert (out_dir / "metagenomeSeq_results.csv").exists()
        assert (out_dir / "daa_method_comparison.csv").exists()

    def test_daa_invalid_group(self, ko_table, two_group_metadata, tmp_path):
        src = tmp_path / "ko.tsv"
        md = tmp_path / "metadata.csv"
        ko_table.to_csv(src, sep="\t", index_label="function")
        two_group_metadata.to_csv(md, index=False)
        code = daa_cli.main(["--abundance-file", str(src), "--metadata-file", str(md),
                             "--group-col", "Treatment", "--methods", "LinDA",
                             "--output-dir", str(tmp_path / "daa")])
        assert code == 1
