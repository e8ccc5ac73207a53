"""HTTP surface for manual uploads and downloads."""
