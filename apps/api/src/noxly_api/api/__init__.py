"""HTTP surface of the NOXLY API."""
