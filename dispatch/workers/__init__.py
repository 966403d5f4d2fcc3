"""
Workers: stream connectors, call-log pollers and the ingestion pipeline
"""
