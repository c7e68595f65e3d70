"""
Módulo de Cotizaciones (Quotes) - conversión cotización → factura

Este módulo maneja las cotizaciones de venta y su conversión en facturas:

- Gestión de cotizaciones (CRUD, búsqueda y filtro por estado)
- Conversión en factura como máximo una vez por cotización
- Aprobación explícita del usuario antes de crear la factura
- Reconciliación automática cuando la factura enlazada se elimina

Componentes:
- store.py / crud.py: Record Store (memoria / PostgreSQL) con publicación de snapshots
- conversion.py: overlay local y detección de "ya convertida"
- reconciliation.py: barrido que revierte cotizaciones con factura inexistente
- workflow.py: máquina de estados del flujo de conversión
- service.py: contextos por empresa y sesiones de UI, CRUD
- router.py: endpoints REST
- tasks.py: reconciliación periódica (Celery)
- tests.py: pruebas unitarias y de integración
"""
