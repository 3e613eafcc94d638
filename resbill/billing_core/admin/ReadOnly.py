from django.contrib import admin
from django.core.exceptions import PermissionDenied

"""Admin base for append-only billing ledgers (allocations, credit, history)."""
class ReadOnlyAdmin(admin.ModelAdmin):
    list_per_page = 50
    # newest ledger rows first
    ordering = ("-pk",)

    def get_readonly_fields(self, request, obj=None):
        return [f.name for f in self.model._meta.fields]

    # rows are written by the billing services only
    def has_add_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False

    def has_change_permission(self, request, obj=None):
        return True

    def save_model(self, request, obj, form, change):
        raise PermissionDenied("Ledger rows are append-only; book a correcting entry instead.")

    # no delete_selected
    def get_actions(self, request):
        return {}

    def get_list_filter(self, request):
        names = {f.name for f in self.model._meta.fields}
        return tuple(c for c in ("type", "status", "is_reversal", "currency_code") if c in names)

    def get_search_fields(self, request):
        names = {f.name for f in self.model._meta.fields}
        lookups = {
            "invoice": "invoice__invoice_number",
            "customer": "customer__name",
            "credit": "credit__customer__name",
            "idempotency_key": "idempotency_key",
        }
        return tuple(lookup for name, lookup in lookups.items() if name in names)
