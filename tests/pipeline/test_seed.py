# SPDX-License-Identifier: MIT
"""Tests for the bibliographic reconciliation pass."""

import json

import pytest
from sqlalchemy import func, select

from pipeline.database import Author, Authorship, Institution, Paper
from pipeline.seed import (
    LineStatus,
    MissingInputError,
    Reconciler,
    count_lines,
    doi_from_ee,
    inst_id_from_external,
    paper_doi,
    paper_key,
    run_seed,
    to_order,
)


def count(session, model) -> int:
    return session.scalar(select(func.count()).select_from(model))


class TestToOrder:
    """Author position normalisation."""

    @pytest.mark.parametrize("value", [1, "1", "first"])
    def test_first_positions(self, value):
        assert to_order(value) == 1

    def test_last_is_sentinel(self):
        assert to_order("last") == 9999

    def test_digit_strings_parse(self):
        assert to_order("12") == 12
        assert to_order(7) == 7

    def test_integral_floats_are_integers(self):
        assert to_order(1.0) == 1
        assert to_order(3.0) == 3

    @pytest.mark.parametrize("value", ["middle", "abc", "1a", "", " 1", None, 1.5, True, [], {}])
    def test_everything_else_is_unordered(self, value):
        assert to_order(value) is None


class TestIdentifiers:
    """Institution id, paper key and DOI derivation."""

    def test_ror_wins_over_name(self):
        assert inst_id_from_external({"ror": "https://ror.org/01xyz", "display_name": "Acme U"}) == "inst:ror:01xyz"

    def test_ror_trailing_slash(self):
        assert inst_id_from_external({"ror": "https://ror.org/01xyz/"}) == "inst:ror:01xyz"

    def test_name_slug_fallback(self):
        assert inst_id_from_external({"display_name": "Acme U. (Berlin)"}) == "inst:name:acme-u-berlin"

    def test_no_identity(self):
        assert inst_id_from_external({}) is None
        assert inst_id_from_external({"display_name": "!!!"}) is None

    def test_non_string_fields_are_ignored(self):
        assert inst_id_from_external({"display_name": 42}) is None
        assert inst_id_from_external({"ror": {"id": "01xyz"}, "display_name": "Acme U"}) == "inst:name:acme-u"
        assert inst_id_from_external({"ror": 7, "display_name": ["Acme U"]}) is None

    def test_paper_key_locations(self):
        assert paper_key({"dblpKey": "a"}) == "a"
        assert paper_key({"dblp_key": "b"}) == "b"
        assert paper_key({"source": {"dblp_key": "c"}, "dblpKey": "x"}) == "c"
        assert paper_key({"title": "no key"}) is None
        assert paper_key({"dblpKey": ""}) is None

    def test_explicit_doi_must_be_prefixed(self):
        assert paper_doi({"doi": "10.1/abc"}) == "10.1/abc"
        assert paper_doi({"doi": "abc", "ee": "https://doi.org/10.2/x"}) == "10.2/x"

    def test_doi_from_ee(self):
        assert doi_from_ee("https://doi.org/10.1145/1") == "10.1145/1"
        assert doi_from_ee(["https://example.org/p", "https://doi.org/10.1145/2"]) == "10.1145/2"
        assert doi_from_ee("https://example.org/p") is None
        assert doi_from_ee(None) is None


class TestExampleRun:
    """The end-to-end example: one of everything, order 1."""

    def test_end_state(self, db_engine, db_handle, data_dir, db_session):
        stats = run_seed(data_dir=data_dir, db=db_handle)

        assert count(db_session, Paper) == 1
        assert count(db_session, Institution) == 1
        assert count(db_session, Author) == 1
        assert count(db_session, Authorship) == 1

        institution = db_session.get(Institution, "inst:ror:01xyz")
        assert institution.name == "Acme U"
        assert institution.country == "US"
        assert (institution.lat, institution.lng) == (1.0, 2.0)

        author = db_session.scalar(select(Author))
        assert author.name == "A. Smith"

        authorship = db_session.scalar(select(Authorship))
        assert authorship.order == 1
        assert authorship.institution_id == "inst:ror:01xyz"

        paper = db_session.scalar(select(Paper))
        assert paper.dblp_key == "conf/chiplay/X20"
        assert paper.title == "T"
        assert paper.year == 2020
        assert paper.venue == "CHI PLAY"

        assert stats.papers_upserted == 1
        assert stats.authorships_linked == 1
        assert stats.authorships_created == 1

    def test_rerun_is_idempotent(self, db_engine, db_handle, data_dir, db_session, sleeps):
        from pipeline.seed import DatabaseHandle

        run_seed(data_dir=data_dir, db=db_handle)
        second = run_seed(data_dir=data_dir, db=DatabaseHandle(sleep=sleeps.append))

        assert count(db_session, Paper) == 1
        assert count(db_session, Authorship) == 1
        assert second.authorships_created == 0
        assert second.authorships_linked == 1

    def test_prefers_doi_augmented_papers(self, db_engine, db_handle, data_dir, db_session):
        (data_dir / "chiplay_papers_with_doi.json").write_text(
            json.dumps([{"dblpKey": "conf/chiplay/X20", "title": "T", "year": 2020, "doi": "10.1/x20"}]),
            encoding="utf-8",
        )
        run_seed(data_dir=data_dir, db=db_handle)
        assert db_session.scalar(select(Paper.doi)) == "10.1/x20"


class TestInputFiles:
    """Mandatory and optional inputs."""

    def test_missing_papers_file_is_fatal(self, db_engine, db_handle, tmp_path):
        with pytest.raises(MissingInputError):
            run_seed(data_dir=tmp_path, db=db_handle)

    def test_optional_files_may_be_missing(self, db_engine, db_handle, tmp_path, sample_papers, db_session):
        (tmp_path / "chiplay_papers.json").write_text(json.dumps(sample_papers), encoding="utf-8")
        stats = run_seed(data_dir=tmp_path, db=db_handle)

        assert stats.papers_upserted == 1
        assert stats.institutions_upserted == 0
        assert stats.lines_processed == 0
        assert count(db_session, Institution) == 0


class TestSeedInstitutionsGeo:
    """Geocoded institution list."""

    def test_idempotent(self, reconciler, db_session, sample_geo):
        reconciler.seed_institutions_geo(sample_geo)
        first = [(i.id, i.name, i.country, i.lat, i.lng, i.type) for i in db_session.scalars(select(Institution))]
        reconciler.seed_institutions_geo(sample_geo)
        db_session.expire_all()
        second = [(i.id, i.name, i.country, i.lat, i.lng, i.type) for i in db_session.scalars(select(Institution))]
        assert first == second

    def test_null_clears_and_absent_keeps(self, reconciler, db_session, sample_geo):
        reconciler.seed_institutions_geo(sample_geo)
        reconciler.seed_institutions_geo([{"id": "inst:ror:01xyz", "lat": None, "name": "Acme University"}])

        institution = db_session.get(Institution, "inst:ror:01xyz")
        assert institution.lat is None
        assert institution.lng == 2.0
        assert institution.country == "US"
        assert institution.name == "Acme University"

    def test_records_without_identity_are_ignored(self, reconciler, db_session):
        upserted = reconciler.seed_institutions_geo([{"name": ""}, "not a record", {"country": "US"}])
        assert upserted == 0
        assert count(db_session, Institution) == 0

    def test_id_derived_when_missing(self, reconciler, db_session):
        reconciler.seed_institutions_geo([{"name": "Nowhere Institute", "lat": 3.0, "lng": 4.0}])
        assert db_session.get(Institution, "inst:name:nowhere-institute") is not None


class TestSeedPapers:
    """DBLP paper list."""

    def test_records_without_key_are_dropped(self, reconciler, db_session):
        upserted = reconciler.seed_papers([{"title": "noise"}, {"dblpKey": ""}, {"dblpKey": "k1", "title": "ok"}])
        assert upserted == 1
        assert reconciler.stats.papers_dropped == 2
        assert count(db_session, Paper) == 1

    def test_update_by_key(self, reconciler, db_session):
        reconciler.seed_papers([{"dblpKey": "k1", "title": "Old", "year": 2019}])
        reconciler.seed_papers([{"dblpKey": "k1", "title": "New", "year": 2020, "venue": "FDG"}])

        paper = db_session.scalar(select(Paper))
        assert (paper.title, paper.year, paper.venue) == ("New", 2020, "FDG")
        assert count(db_session, Paper) == 1

    def test_doi_collision_keeps_first_owner(self, reconciler, db_session):
        reconciler.seed_papers([
            {"dblpKey": "k1", "doi": "10.1/abc"},
            {"dblpKey": "k2", "doi": "10.1/abc"},
        ])
        owners = dict(db_session.execute(select(Paper.dblp_key, Paper.doi)).all())
        assert owners == {"k1": "10.1/abc", "k2": None}
        assert reconciler.stats.id_conflicts == 1

    def test_year_must_be_integral(self, reconciler, db_session):
        reconciler.seed_papers([
            {"dblpKey": "k1", "year": 2020.0},
            {"dblpKey": "k2", "year": 2020.5},
            {"dblpKey": "k3", "year": "2020"},
            {"dblpKey": "k4", "year": True},
        ])
        years = dict(db_session.execute(select(Paper.dblp_key, Paper.year)).all())
        assert years == {"k1": 2020, "k2": None, "k3": None, "k4": None}


class TestSafeUpdatePaperIds:
    """Identifier backfill without stealing."""

    def test_conflicting_doi_is_skipped(self, reconciler, db_session):
        reconciler.seed_papers([{"dblpKey": "owner", "doi": "10.1/abc"}, {"dblpKey": "other"}])
        other = db_session.scalar(select(Paper).where(Paper.dblp_key == "other"))

        written = reconciler.safe_update_paper_ids(other, doi="10.1/abc", openalex_id="W1")

        assert written == {"openalex_id": "W1"}
        db_session.expire_all()
        owner = db_session.scalar(select(Paper).where(Paper.dblp_key == "owner"))
        assert owner.doi == "10.1/abc"
        assert db_session.get(Paper, other.id).doi is None
        assert db_session.get(Paper, other.id).openalex_id == "W1"

    def test_same_owner_rewrites(self, reconciler, db_session):
        reconciler.seed_papers([{"dblpKey": "owner", "doi": "10.1/abc"}])
        owner = db_session.scalar(select(Paper))
        assert reconciler.safe_update_paper_ids(owner, doi="10.1/abc") == {"doi": "10.1/abc"}
        assert reconciler.stats.id_conflicts == 0


class TestSeedAuthorships:
    """OpenAlex JSONL lines."""

    @pytest.fixture
    def seeded(self, reconciler, sample_papers):
        reconciler.seed_papers(sample_papers)
        return reconciler

    def test_duplicate_triple_yields_one_row(self, seeded, db_session, sample_authorship_line):
        line = json.dumps(sample_authorship_line)
        seeded.seed_authorships_from_openalex([line, line])

        assert count(db_session, Authorship) == 1
        assert seeded.stats.authorships_linked == 2
        assert seeded.stats.authorships_created == 1

    def test_bad_lines_are_skipped(self, seeded, db_session, sample_authorship_line):
        lines = [
            "{not json",
            "[1, 2]",
            json.dumps({"authorships": []}),
            "",
            json.dumps({"dblp_key": "conf/unknown/Y21", "authorships": []}),
            json.dumps(sample_authorship_line),
        ]
        stats = seeded.seed_authorships_from_openalex(lines)

        assert stats.lines_processed == 5
        assert stats.lines_skipped == 3
        assert stats.papers_missing == 1
        assert stats.skip_reasons == {"malformed_json": 1, "not_an_object": 1, "missing_dblp_key": 1}
        assert count(db_session, Authorship) == 1

    def test_process_line_outcomes(self, seeded, sample_authorship_line):
        assert seeded.process_line("   \n") is None
        assert seeded.process_line("{oops").status is LineStatus.SKIPPED
        miss = seeded.process_line(json.dumps({"dblp_key": "nope"}))
        assert miss.status is LineStatus.PAPER_MISS
        linked = seeded.process_line(json.dumps(sample_authorship_line))
        assert linked.status is LineStatus.LINKED
        assert linked.links == 1

    def test_backfills_ids_from_line(self, seeded, db_session, sample_authorship_line):
        line = {**sample_authorship_line, "id": "https://openalex.org/W42", "doi": "https://doi.org/10.9/x"}
        seeded.seed_authorships_from_openalex([json.dumps(line)])

        paper = db_session.scalar(select(Paper))
        assert paper.openalex_id == "https://openalex.org/W42"
        assert paper.doi == "10.9/x"

    def test_author_identity(self, seeded, db_session):
        line = {
            "dblp_key": "conf/chiplay/X20",
            "authorships": [
                {"author": {"id": "A1", "display_name": "Sam Lee"}, "institutions": [{"display_name": "Uni One"}]},
                {"author": {"display_name": "Sam Lee"}, "institutions": [{"display_name": "Uni Two"}]},
                {"author": {"display_name": "Sam Lee"}, "institutions": [{"display_name": "Uni Three"}]},
                {"author": {}, "institutions": [{"display_name": "Uni One"}], "author_position": "middle"},
            ],
        }
        seeded.seed_authorships_from_openalex([json.dumps(line)])

        names = sorted(db_session.scalars(select(Author.name)))
        # Namesakes without an OpenAlex ID collapse onto the first match
        assert names == ["Sam Lee", "Unknown"]
        assert count(db_session, Authorship) == 4
        orders = set(db_session.scalars(select(Authorship.order)))
        assert orders == {None}

    def test_institution_ref_keeps_existing_fields(self, seeded, db_session, sample_geo):
        seeded.seed_institutions_geo(sample_geo)
        line = {
            "dblp_key": "conf/chiplay/X20",
            "authorships": [
                {"author": {"display_name": "A"}, "institutions": [{"ror": "https://ror.org/01xyz"}]},
            ],
        }
        seeded.seed_authorships_from_openalex([json.dumps(line)])

        institution = db_session.get(Institution, "inst:ror:01xyz")
        assert institution.name == "Acme U"
        assert institution.country == "US"
        assert institution.lat == 1.0

    def test_progress_callback(self, db_handle, sample_papers, sample_authorship_line):
        calls = []
        reconciler = Reconciler(db_handle, progress_callback=lambda *args: calls.append(args), progress_every=1)
        reconciler.seed_papers(sample_papers)
        reconciler.seed_authorships_from_openalex([json.dumps(sample_authorship_line)], total=1)

        assert (1, None, "papers") in calls
        assert (1, 1, "authorships") in calls


class TestMistypedFields:
    """Wrong JSON types are skipped or ignored, never fatal."""

    @pytest.fixture
    def seeded(self, reconciler, sample_papers):
        reconciler.seed_papers(sample_papers)
        return reconciler

    @pytest.mark.parametrize("dblp_key", [{"a": 1}, ["conf/chiplay/X20"], 42, True])
    def test_non_string_dblp_key(self, seeded, dblp_key):
        outcome = seeded.process_line(json.dumps({"dblp_key": dblp_key, "authorships": []}))
        assert outcome.status is LineStatus.SKIPPED
        assert outcome.reason == "invalid_dblp_key"

    def test_non_string_names_and_ids(self, seeded, db_session):
        line = {
            "dblp_key": "conf/chiplay/X20",
            "id": {"openalex": "W1"},
            "doi": 10.1,
            "authorships": [
                {
                    "author": {"id": 5, "display_name": 42},
                    "institutions": [
                        {"display_name": 42},
                        {"display_name": "Acme U", "country_code": ["US"]},
                    ],
                    "author_position": 2.0,
                },
            ],
        }
        stats = seeded.seed_authorships_from_openalex([json.dumps(line)])

        assert stats.lines_skipped == 0
        assert stats.authorships_linked == 1

        paper = db_session.scalar(select(Paper))
        assert (paper.openalex_id, paper.doi) == (None, None)

        author = db_session.scalar(select(Author))
        assert (author.name, author.openalex_id) == ("Unknown", None)

        institution = db_session.get(Institution, "inst:name:acme-u")
        assert institution.name == "Acme U"
        assert institution.country is None
        assert count(db_session, Institution) == 1

        assert db_session.scalar(select(Authorship.order)) == 2

    def test_bad_fields_do_not_stop_the_stream(self, seeded, db_session, sample_authorship_line):
        lines = [
            json.dumps({"dblp_key": {"a": 1}}),
            json.dumps({"dblp_key": "conf/chiplay/X20", "authorships": [{"institutions": [{"display_name": 42}]}]}),
            json.dumps(sample_authorship_line),
        ]
        stats = seeded.seed_authorships_from_openalex(lines)

        assert stats.lines_processed == 3
        assert stats.skip_reasons == {"invalid_dblp_key": 1}
        assert count(db_session, Authorship) == 1


class TestOpenAlexFile:
    """Reading the JSONL dump from disk."""

    def test_undecodable_bytes_are_not_fatal(self, db_engine, db_handle, data_dir, sample_authorship_line, db_session):
        (data_dir / "openalex_authorships.jsonl").write_bytes(
            b"\xff\n"
            + b'{"dblp_key": "conf/other/Z1", "x": "\xff\xfe"}\n'
            + b"\n"
            + json.dumps(sample_authorship_line).encode("utf-8") + b"\n"
        )

        stats = run_seed(data_dir=data_dir, db=db_handle)

        assert stats.lines_processed == 3
        assert stats.skip_reasons == {"malformed_json": 1}
        assert stats.papers_missing == 1
        assert stats.authorships_linked == 1
        assert count(db_session, Authorship) == 1

    def test_count_lines_ignores_blank_lines(self, tmp_path):
        path = tmp_path / "lines.jsonl"
        path.write_bytes(b'{"a": 1}\n\n   \n\xff\n{"b": 2}')
        assert count_lines(path) == 3

    def test_final_progress_reported_with_blank_lines(self, db_engine, db_handle, data_dir, sample_authorship_line):
        (data_dir / "openalex_authorships.jsonl").write_text(
            "\n" + json.dumps(sample_authorship_line) + "\n\n", encoding="utf-8"
        )
        calls = []
        reconciler = Reconciler(db_handle, progress_callback=lambda *args: calls.append(args), progress_every=1000)

        reconciler.run(data_dir)

        assert calls[-1] == (1, 1, "authorships")
