# Workers: separate processes that share state through the database.
# Run from backend/ with:
#   python -m workers.geo_intel_worker
