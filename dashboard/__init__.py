"""Dashboard server: health probes, executor API and live event relay."""
