#!/usr/bin/env python3
# filename: geoip.py
# -----------------------------------------------------------------------------
# Project: Fallback DNS Server
# Version: 2.0.0 (Swappable MMDB snapshot)
# -----------------------------------------------------------------------------
"""
GeoIP country classifier backed by a MaxMind DB (.mmdb) reader.

The current reader is a snapshot published by a single attribute rebind.
Lookups read the handle once and never lock, so a concurrent swap is seen
either fully old or fully new.
"""

import ipaddress
import logging
import os
from pathlib import Path
from typing import Optional

import maxminddb

from utils import get_logger

logger = get_logger("Fallback.GeoIP")

DB_FILENAME = 'geo.mmdb'
NEW_DB_FILENAME = 'geo_new.mmdb'

# Errors raised by maxminddb while opening or walking a bad database
DATABASE_ERRORS = (maxminddb.InvalidDatabaseError, OSError, ValueError, TypeError)


def open_database(path) -> 'maxminddb.Reader':
    """Open an .mmdb file fully into memory (no file handle kept)."""
    reader = maxminddb.open_database(str(path), maxminddb.MODE_MEMORY)
    meta = reader.metadata()
    logger.debug(f"Opened {path}: {meta.database_type}, {meta.node_count} nodes, built {meta.build_epoch}")
    return reader


def load_from_folder(folder) -> Optional['maxminddb.Reader']:
    """
    Load the persisted database at startup.

    A geo_new.mmdb left by the refresher is the newest good copy, so it is
    promoted to geo.mmdb before opening.
    """
    folder = Path(folder)
    db_path = folder / DB_FILENAME
    new_path = folder / NEW_DB_FILENAME

    if new_path.exists():
        try:
            os.replace(new_path, db_path)
            logger.info(f"Promoted {new_path.name} to {db_path.name}")
        except OSError as e:
            logger.warning(f"Failed to promote {new_path}: {e}")

    if not db_path.exists():
        logger.info(f"No GeoIP database at {db_path}")
        return None

    try:
        reader = open_database(db_path)
        logger.info(f"Loaded GeoIP database {db_path}")
        return reader
    except DATABASE_ERRORS as e:
        logger.error(f"{db_path} is a bad GeoIP database: {e}")
        return None


def country_from_record(record) -> Optional[str]:
    """Extract the ISO country code from a GeoIP2/GeoLite2 country or city record."""
    if not isinstance(record, dict):
        return None
    for key in ('country', 'registered_country'):
        section = record.get(key)
        if isinstance(section, dict):
            code = section.get('iso_code')
            if code:
                return str(code).upper()
    return None


class GeoClassifier:
    def __init__(self, reader=None):
        self._reader = reader

    @property
    def reader(self):
        return self._reader

    @property
    def loaded(self) -> bool:
        return self._reader is not None

    def publish(self, reader):
        """Make a fully opened reader the current snapshot."""
        self._reader = reader
        if reader is not None:
            logger.info("GeoIP database published")

    def lookup_country(self, address) -> Optional[str]:
        """Return the ISO country code for an address, or None when unknown."""
        reader = self._reader
        if reader is None:
            return None

        try:
            ip = ipaddress.ip_address(str(address))
        except ValueError:
            return None

        try:
            record = reader.get(ip)
        except DATABASE_ERRORS as e:
            logger.warning(f"GeoIP lookup failed for {ip}: {e}")
            return None

        code = country_from_record(record)
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(f"GeoIP {ip} -> {code or 'NotFound'}")
        return code

    def close(self):
        self._reader = None
