"""
Módulo de Facturación (Invoices)

Las facturas se crean únicamente desde cotizaciones (ver módulo quotes).
Este módulo expone su consulta y su eliminación; eliminar una factura
dispara la reconciliación de las cotizaciones que la referenciaban.

Tablas principales:
- invoices: Facturas de venta (copia de cliente, ítems y totales)
- invoice_sequences: Secuencias de numeración por empresa
"""
