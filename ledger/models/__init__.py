"""Ledger domain models."""

from ledger.models.line_item import LineItem, LineItemInput, DEFAULT_UOM, DEFAULT_SALE_TYPE
from ledger.models.document import DocumentType, DiscountType, DocumentTotals, DocumentInput
from ledger.models.company import (
    Company, CompanyCreate, CompanyUpdate, RegistrationType, SalesTaxRate, SalesTaxRateCreate,
    WithholdingTaxRate, WithholdingTaxRateCreate,
)
from ledger.models.customer import Customer, CustomerCreate, CustomerUpdate
from ledger.models.vendor import Vendor, VendorCreate, VendorUpdate
from ledger.models.item import Item, ItemCreate, ItemUpdate, MappedItem, Uom
from ledger.models.estimate import (
    Estimate, EstimateCreate, EstimateUpdate, EstimateStatus, DeliveryTimeUnit,
    MappedEstimate, ImportResult, RowImportResult,
)
from ledger.models.invoice import (
    InvoiceStatus, SalesInvoice, SalesInvoiceCreate, SalesInvoiceUpdate, MappedSalesInvoice,
    PurchaseInvoice, PurchaseInvoiceCreate, PurchaseInvoiceUpdate,
)
from ledger.models.payment import (
    Payment, PaymentCreate, PaymentUpdate, PaymentStatus, PaymentMode, PaymentAllocation,
    InvoicePaymentSummary, UnpaidInvoice, AvailablePayment,
)

__all__ = [
    # LineItem
    "LineItem", "LineItemInput", "DEFAULT_UOM", "DEFAULT_SALE_TYPE",
    # Document
    "DocumentType", "DiscountType", "DocumentTotals", "DocumentInput",
    # Company
    "Company", "CompanyCreate", "CompanyUpdate", "RegistrationType",
    "SalesTaxRate", "SalesTaxRateCreate", "WithholdingTaxRate", "WithholdingTaxRateCreate",
    # Customer
    "Customer", "CustomerCreate", "CustomerUpdate",
    # Vendor
    "Vendor", "VendorCreate", "VendorUpdate",
    # Item
    "Item", "ItemCreate", "ItemUpdate", "MappedItem", "Uom",
    # Estimate
    "Estimate", "EstimateCreate", "EstimateUpdate", "EstimateStatus", "DeliveryTimeUnit",
    "MappedEstimate", "ImportResult", "RowImportResult",
    # Invoice
    "InvoiceStatus", "SalesInvoice", "SalesInvoiceCreate", "SalesInvoiceUpdate", "MappedSalesInvoice",
    "PurchaseInvoice", "PurchaseInvoiceCreate", "PurchaseInvoiceUpdate",
    # Payment
    "Payment", "PaymentCreate", "PaymentUpdate", "PaymentStatus", "PaymentMode",
    "PaymentAllocation", "InvoicePaymentSummary", "UnpaidInvoice", "AvailablePayment",
]
