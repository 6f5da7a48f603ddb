"""
Scripts Package for job_analytics

Contains runnable scripts for:
- run_aggregation.py: Rebuild aggregated analytics for a date window
- run_sync.py: Sync platform data for one user or all configured users
"""
