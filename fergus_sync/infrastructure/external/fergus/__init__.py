"""
Origen: API v2 de Fergus (jobs y facturas).

La credencial (cookie de sesion) se inyecta; este paquete nunca hace login.
"""
