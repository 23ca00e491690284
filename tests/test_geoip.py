"""
Tests for the swappable GeoIP classifier and the on-disk database loader.
"""

import threading

import pytest

import geoip
from geoip import GeoClassifier, country_from_record, load_from_folder, DB_FILENAME, NEW_DB_FILENAME


class TestCountryFromRecord:
    def test_country_code(self):
        assert country_from_record({'country': {'iso_code': 'nl'}}) == 'NL'

    def test_registered_country_fallback(self):
        record = {'registered_country': {'iso_code': 'US'}}
        assert country_from_record(record) == 'US'

    @pytest.mark.parametrize("record", [None, {}, {'country': {}}, {'country': 'NL'}, "NL"])
    def test_no_code(self, record):
        assert country_from_record(record) is None


class TestGeoClassifier:
    def test_lookup(self, fake_reader):
        geo = GeoClassifier(fake_reader({'8.8.8.8': 'US', '2001:db8::1': 'DE'}))

        assert geo.lookup_country('8.8.8.8') == 'US'
        assert geo.lookup_country('2001:db8::1') == 'DE'

    def test_not_found_cases(self, fake_reader):
        assert GeoClassifier().lookup_country('8.8.8.8') is None

        geo = GeoClassifier(fake_reader({'8.8.8.8': 'US'}))
        assert geo.lookup_country('1.1.1.1') is None
        assert geo.lookup_country('not-an-ip') is None

    def test_lookup_error_is_not_found(self, fake_reader):
        geo = GeoClassifier(fake_reader({'8.8.8.8': 'US'}, fail=True))
        assert geo.lookup_country('8.8.8.8') is None

    def test_publish_swaps_snapshot(self, fake_reader):
        geo = GeoClassifier(fake_reader({'8.8.8.8': 'US'}))
        assert geo.loaded

        geo.publish(fake_reader({'8.8.8.8': 'NL'}))
        assert geo.lookup_country('8.8.8.8') == 'NL'

        geo.close()
        assert not geo.loaded
        assert geo.lookup_country('8.8.8.8') is None

    def test_concurrent_swap_sees_whole_snapshots(self, fake_reader):
        """Readers racing a publisher only ever see one of the two databases."""
        old = fake_reader({'9.9.9.9': 'CH'})
        new = fake_reader({'9.9.9.9': 'SE'})
        geo = GeoClassifier(old)
        seen = set()
        stop = threading.Event()

        def reader_loop():
            while not stop.is_set():
                seen.add(geo.lookup_country('9.9.9.9'))

        threads = [threading.Thread(target=reader_loop) for _ in range(4)]
        for t in threads:
            t.start()
        for i in range(2000):
            geo.publish(new if i % 2 else old)
        stop.set()
        for t in threads:
            t.join()

        assert seen <= {'CH', 'SE'}
        assert None not in seen


class TestLoadFromFolder:
    def test_missing_database(self, tmp_path):
        assert load_from_folder(tmp_path) is None

    def test_corrupt_database(self, tmp_path):
        (tmp_path / DB_FILENAME).write_bytes(b"this is not a maxmind database")
        assert load_from_folder(tmp_path) is None

    def test_newer_download_is_promoted(self, tmp_path, monkeypatch):
        (tmp_path / DB_FILENAME).write_bytes(b"old")
        (tmp_path / NEW_DB_FILENAME).write_bytes(b"new")
        opened = []

        def fake_open(path):
            opened.append(path.read_bytes())
            return object()

        monkeypatch.setattr(geoip, 'open_database', fake_open)

        assert load_from_folder(tmp_path) is not None
        assert opened == [b"new"]
        assert not (tmp_path / NEW_DB_FILENAME).exists()
        assert (tmp_path / DB_FILENAME).read_bytes() == b"new"
