"""
Game Leadership Map data pipeline.

Reconciles the bibliographic dumps into the institution graph, handles
community submissions and exports the static map feeds.

Run with:
    python -m pipeline.main --help
"""
