"""
Destino: tablas de Airtable via REST API.
"""
