"""HTTP API for previewing catalogs and running imports."""
