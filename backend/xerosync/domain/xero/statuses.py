SYNC_STATUS_DRAFT = "draft"
SYNC_STATUS_PENDING = "pending"
SYNC_STATUS_STAGED = "staged"
SYNC_STATUS_SYNCED = "synced"
SYNC_STATUS_FAILED = "failed"
SYNC_STATUS_IGNORED = "ignored"
SYNC_STATUSES = {
    SYNC_STATUS_DRAFT,
    SYNC_STATUS_PENDING,
    SYNC_STATUS_STAGED,
    SYNC_STATUS_SYNCED,
    SYNC_STATUS_FAILED,
    SYNC_STATUS_IGNORED,
}
# Rows the batch synchronizer picks up.
SYNCABLE_STATUSES = (SYNC_STATUS_PENDING, SYNC_STATUS_STAGED)

CONTACT_STATUS_SYNCED = "synced"
CONTACT_STATUS_FAILED = "failed"

INVOICE_TYPE_SALE = "ACCREC"
INVOICE_TYPE_CREDIT = "ACCRECCREDIT"

XERO_STATUS_DRAFT = "DRAFT"
XERO_STATUS_AUTHORISED = "AUTHORISED"

LINE_TYPE_MEMBERSHIP = "membership"
LINE_TYPE_REGISTRATION = "registration"
LINE_TYPE_DONATION = "donation"
LINE_TYPE_DISCOUNT = "discount"
LINE_TYPE_REFUND = "refund"
LINE_TYPES = {
    LINE_TYPE_MEMBERSHIP,
    LINE_TYPE_REGISTRATION,
    LINE_TYPE_DONATION,
    LINE_TYPE_DISCOUNT,
    LINE_TYPE_REFUND,
}

TAX_TYPE_NONE = "NONE"

OPERATION_CONTACT_SYNC = "contact_sync"
OPERATION_INVOICE_SYNC = "invoice_sync"
OPERATION_PAYMENT_SYNC = "payment_sync"
OPERATION_CREDIT_NOTE_SYNC = "credit_note_sync"
OPERATION_TOKEN_REFRESH = "token_refresh"

ENTITY_CONTACT = "contact"
ENTITY_INVOICE = "invoice"
ENTITY_PAYMENT = "payment"
ENTITY_CREDIT_NOTE = "credit_note"
ENTITY_TOKEN = "token"
