"""
Unit tests for pathway annotation and the KEGG REST client.
"""
from unittest.mock import MagicMock, patch

import pandas as pd
import pytest
import requests

from picrust2_tools.analysis.annotation import (
    KeggClient,
    ko_description,
    parse_kegg_flat_file,
    parse_kegg_link,
    pathway_annotation,
)
from picrust2_tools.errors import AnnotationLookupFailure, InvalidInput

KEGG_RECORD = """ENTRY       map99991                    Pathway
NAME        Synthetic test pathway
DESCRIPTION A pathway used in tests. It spans
            two lines.
CLASS       Metabolism; Test metabolism
PATHWAY_MAP map99991  Synthetic test pathway
///
ENTRY       map99992                    Pathway
NAME        Second test pathway
CLASS       Metabolism; Test metabolism
///
"""

KO_RECORD = """ENTRY       K99999                      KO
SYMBOL      tstA
NAME        synthetic test enzyme
PATHWAY     map99991  Synthetic test pathway
///
"""

KEGG_LINK = """ko:K99999\tpath:map99991
ko:K99999\tpath:ko99991
ko:K99998\tpath:map99992
"""


def _response(status_code=200, text=""):
    response = MagicMock()
    response.status_code = status_code
    response.text = text
    return response


def _results(features, p_adjust):
    return pd.DataFrame({
        "feature": features,
        "method": "LinDA",
        "group1": "Desert",
        "group2": "Forest",
        "effect_size": 1.0,
        "p_values": p_adjust,
        "p_adjust": p_adjust,
    })


class TestParseKeggFlatFile:

    def test_fields(self):
        records = parse_kegg_flat_file(KEGG_RECORD)
        assert set(records) == {"map99991", "map99992"}
        first = records["map99991"]
        assert first["pathway_name"] == "Synthetic test pathway"
        assert first["pathway_description"] == "A pathway used in tests. It spans two lines."
        assert first["pathway_class"] == "Metabolism; Test metabolism"
        assert first["pathway_map"] == "map99991"
        assert records["map99992"]["pathway_description"] is None

    def test_no_records(self):
        assert parse_kegg_flat_file("") == {}

    def test_ko_record(self):
        record = parse_kegg_flat_file(KO_RECORD)["K99999"]
        assert record["symbol"] == "tstA"
        assert record["pathway_name"] == "synthetic test enzyme"
        assert ko_description(record) == "tstA; synthetic test enzyme"

    def test_ko_description_without_symbol(self):
        record = {"symbol": None, "pathway_name": "test enzyme", "definition": "test enzyme [EC:9.9.9.9]"}
        assert ko_description(record) == "test enzyme; test enzyme [EC:9.9.9.9]"
        assert ko_description({}) is None


class TestParseKeggLink:

    def test_reference_maps_only(self):
        assert parse_kegg_link(KEGG_LINK) == [("map99991", "K99999"), ("map99992", "K99998")]

    def test_empty(self):
        assert parse_kegg_link("\n") == []

    def test_malformed_line(self):
        with pytest.raises(AnnotationLookupFailure):
            parse_kegg_link("<html>maintenance</html>")


class TestKeggClient:

    @patch("picrust2_tools.analysis.annotation.requests.get")
    def test_batches_of_ten(self, mock_get):
        mock_get.return_value = _response(200, KEGG_RECORD)
        client = KeggClient()
        ids = [f"map{i:05d}" for i in range(12)]
        records, warnings = client.fetch(ids)
        assert mock_get.call_count == 2
        first_url = mock_get.call_args_list[0].args[0]
        assert first_url.startswith("https://rest.kegg.jp/get/")
        assert first_url.count("+") == 9
        assert "map99991" in records
        assert warnings == []

    @patch("picrust2_tools.analysis.annotation.requests.get")
    def test_retry_once_on_server_error(self, mock_get):
        mock_get.side_effect = [_response(503), _response(200, KEGG_RECORD)]
        records = KeggClient().fetch_batch(["map99991"])
        assert mock_get.call_count == 2
        assert records["map99991"]["pathway_name"] == "Synthetic test pathway"

    @patch("picrust2_tools.analysis.annotation.requests.get")
    def test_gives_up_after_retry(self, mock_get):
        mock_get.side_effect = requests.Timeout("timed out")
        with pytest.raises(AnnotationLookupFailure):
            KeggClient(timeout=1).fetch_batch(["map99991"])
        assert mock_get.call_count == 2
        assert mock_get.call_args.kwargs["timeout"] == 1

    @patch("picrust2_tools.analysis.annotation.requests.get")
    def test_retry_on_broken_stream(self, mock_get):
        mock_get.side_effect = [requests.exceptions.ChunkedEncodingError("connection broken"),
                                _response(200, KEGG_RECORD)]
        records = KeggClient().fetch_batch(["map99991"])
        assert mock_get.call_count == 2
        assert "map99991" in records

    @pytest.mark.parametrize("error", [
        requests.exceptions.ContentDecodingError("bad gzip"),
        requests.exceptions.TooManyRedirects("redirect loop"),
        requests.exceptions.InvalidURL("bad url"),
    ])
    @patch("picrust2_tools.analysis.annotation.requests.get")
    def test_other_request_errors_become_lookup_failures(self, mock_get, error):
        mock_get.side_effect = error
        with pytest.raises(AnnotationLookupFailure):
            KeggClient().fetch_batch(["map99991"])
        assert mock_get.call_count == 1

    @patch("picrust2_tools.analysis.annotation.requests.get")
    def test_not_found(self, mock_get):
        mock_get.return_value = _response(404, "")
        assert KeggClient().fetch_batch(["map99999"]) == {}

    @patch("picrust2_tools.analysis.annotation.requests.get")
    def test_malformed_response(self, mock_get):
        mock_get.return_value = _response(200, "<html>maintenance</html>")
        with pytest.raises(AnnotationLookupFailure):
            KeggClient().fetch_batch(["map99991"])

    def test_batch_too_large(self):
        with pytest.raises(InvalidInput):
            KeggClient().fetch_batch([f"map{i:05d}" for i in range(11)])

    @patch("picrust2_tools.analysis.annotation.requests.get")
    def test_link_pathways(self, mock_get):
        mock_get.side_effect = [_response(200, KEGG_LINK), _response(404, "")]
        kos = ["K99999", "K99998"] + [f"K9000{i}" for i in range(10)]
        linked, warnings = KeggClient().link_pathways(kos)
        assert mock_get.call_count == 2
        assert mock_get.call_args_list[0].args[0].startswith("https://rest.kegg.jp/link/pathway/K99999+K99998")
        assert list(linked.columns) == ["pathway", "ko"]
        assert set(zip(linked["pathway"], linked["ko"])) == {("map99991", "K99999"), ("map99992", "K99998")}
        assert warnings == []

    @patch("picrust2_tools.analysis.annotation.requests.get")
    def test_link_failure_becomes_warning(self, mock_get):
        mock_get.return_value = _response(400, "")
        linked, warnings = KeggClient().link_pathways(["K99999"])
        assert linked.empty
        assert len(warnings) == 1
        assert "K99999" in warnings[0]


class TestPathwayAnnotation:

    def test_ko_descriptions(self):
        result = pathway_annotation(_results(["K00134", "K01810"], [0.01, 0.2]), pathway="KO")
        names = result.table.set_index("feature")["pathway_name"]
        assert "glyceraldehyde 3-phosphate dehydrogenase" in names["K00134"]
        assert result.warnings == []

    def test_bundled_kegg_reference(self):
        client = MagicMock()
        result = pathway_annotation(_results(["map00010", "ko00030"], [0.01, 0.02]),
                                    ko_to_kegg=True, client=client)
        table = result.table.set_index("feature")
        assert table.loc["map00010", "pathway_name"] == "Glycolysis / Gluconeogenesis"
        assert table.loc["map00010", "pathway_class"] == "Metabolism; Carbohydrate metabolism"
        assert table.loc["ko00030", "pathway_map"] == "map00030"
        client.fetch.assert_not_called()

    def test_remote_lookup_for_significant_only(self):
        client = MagicMock()
        client.fetch.return_value = (parse_kegg_flat_file(KEGG_RECORD), [])
        df = _results(["map99991", "map99992"], [0.01, 0.5])
        result = pathway_annotation(df, ko_to_kegg=True, client=client)
        assert list(client.fetch.call_args.args[0]) == ["map99991"]
        table = result.table.set_index("feature")
        assert table.loc["map99991", "pathway_name"] == "Synthetic test pathway"
        assert pd.isna(table.loc["map99992", "pathway_name"])

    @patch("picrust2_tools.analysis.annotation.requests.get")
    def test_unreachable_service(self, mock_get):
        mock_get.side_effect = requests.ConnectionError("network unreachable")
        df = _results(["map99991", "map99992", "map00010"], [0.01, 0.02, 0.03])
        result = pathway_annotation(df, ko_to_kegg=True)

        assert len(result.table) == 3
        assert list(result.table["feature"]) == ["map99991", "map99992", "map00010"]
        table = result.table.set_index("feature")
        assert table.loc[["map99991", "map99992"], "pathway_name"].isna().all()
        assert table.loc["map00010", "pathway_name"] == "Glycolysis / Gluconeogenesis"
        assert len(result.warnings) > 0

    @patch("picrust2_tools.analysis.annotation.requests.get")
    def test_broken_stream_degrades_to_warnings(self, mock_get):
        mock_get.side_effect = requests.exceptions.ChunkedEncodingError("connection broken")
        df = _results(["map99991", "map00010"], [0.01, 0.02])
        result = pathway_annotation(df, ko_to_kegg=True)
        table = result.table.set_index("feature")
        assert len(table) == 2
        assert pd.isna(table.loc["map99991", "pathway_name"])
        assert table.loc["map00010", "pathway_name"] == "Glycolysis / Gluconeogenesis"
        assert result.warnings

    def test_idempotent(self):
        client = MagicMock()
        client.fetch.return_value = ({}, ["KEGG lookup failed for map99991: down"])
        df = _results(["map00010", "map99991"], [0.01, 0.02])
        once = pathway_annotation(df, ko_to_kegg=True, client=client).table
        twice = pathway_annotation(once, ko_to_kegg=True, client=client).table
        pd.testing.assert_frame_equal(once, twice)

    def test_filled_fields_not_overwritten(self):
        df = _results(["map00010"], [0.01]).assign(pathway_name="My own name")
        result = pathway_annotation(df, ko_to_kegg=True, client=MagicMock())
        row = result.table.iloc[0]
        assert row["pathway_name"] == "My own name"
        assert row["pathway_class"] == "Metabolism; Carbohydrate metabolism"

    def test_remote_ko_lookup_for_significant_only(self):
        client = MagicMock()
        client.fetch.return_value = (parse_kegg_flat_file(KO_RECORD), [])
        df = _results(["K00134", "K99999", "K99998"], [0.01, 0.02, 0.5])
        result = pathway_annotation(df, pathway="KO", client=client)
        assert list(client.fetch.call_args.args[0]) == ["K99999"]
        names = result.table.set_index("feature")["pathway_name"]
        assert names["K99999"] == "tstA; synthetic test enzyme"
        assert "glyceraldehyde 3-phosphate dehydrogenase" in names["K00134"]
        assert pd.isna(names["K99998"])
        assert result.warnings == []

    def test_remote_ko_lookup_failure(self):
        client = MagicMock()
        client.fetch.return_value = ({}, ["KEGG lookup failed for K99999: down"])
        result = pathway_annotation(_results(["K99999"], [0.01]), pathway="KO", client=client)
        assert pd.isna(result.table["pathway_name"].iloc[0])
        assert result.warnings == ["KEGG lookup failed for K99999: down"]

    def test_kind_mismatch_warns(self):
        result = pathway_annotation(_results(["PWY-7219", "K00134"], [0.01, 0.02]), pathway="KO")
        table = result.table.set_index("feature")
        assert pd.isna(table.loc["PWY-7219", "pathway_name"])
        assert any("not KO identifiers" in w for w in result.warnings)

    def test_input_not_mutated(self):
        df = _results(["map00010"], [0.01])
        before = df.copy()
        pathway_annotation(df, ko_to_kegg=True, client=MagicMock())
        pd.testing.assert_frame_equal(df, before)

    def test_annotate_abundance_file(self, tmp_path):
        path = tmp_path / "EC_pred_metagenome_unstrat.tsv"
        pd.DataFrame({"S1": [1.0, 2.0], "S2": [3.0, 4.0]},
                     index=pd.Index(["EC:1.1.1.27", "EC:9.9.9.9"], name="function")).to_csv(path, sep="\t")
        result = pathway_annotation(file=str(path), pathway="EC")
        assert result.table.columns[0] == "description"
        assert result.table.loc["EC:1.1.1.27", "description"] == "L-lactate dehydrogenase"
        assert pd.isna(result.table.loc["EC:9.9.9.9", "description"])
        assert len(result.warnings) == 1

    def test_unknown_pathway_type(self):
        with pytest.raises(InvalidInput):
            pathway_annotation(_results(["K00134"], [0.01]), pathway="COG")

    def test_nothing_to_annotate(self):
        with pytest.raises(InvalidInput):
            pathway_annotation()
