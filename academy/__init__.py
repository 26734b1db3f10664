"""Sales academy backend: offline-first progress with Airtable sync."""
