from caseflow.models.production import (  # noqa: F401
    FileUpload,
    ProductionCase,
    ProductionMeta,
    Shipment,
)
