from django.contrib import admin
from django.contrib import messages
from django.utils.html import format_html

from .errors import RelayError
from .models import RelayTransaction

STATUS_COLORS = {
    'submitted': '#3B82F6',
    'confirmed': '#10B981',
    'failed': '#EF4444',
    'indeterminate': '#F59E0B',
}


@admin.register(RelayTransaction)
class RelayTransactionAdmin(admin.ModelAdmin):
    list_display = ['id', 'kind', 'status_display', 'signature_short', 'user', 'amount_units', 'fee_units', 'created_at']
    list_filter = ['kind', 'status', 'created_at']
    search_fields = ['signature', 'from_owner', 'to_owner', 'user__email', 'idempotency_key']
    readonly_fields = [f.name for f in RelayTransaction._meta.fields]
    ordering = ['-created_at']
    actions = ['reconcile_selected']

    def get_queryset(self, request):
        return super().get_queryset(request).select_related('user')

    def status_display(self, obj):
        return format_html(
            '<span style="background-color: {}; color: white; padding: 2px 6px; '
            'border-radius: 4px; font-size: 11px;">{}</span>',
            STATUS_COLORS.get(obj.status, '#6B7280'),
            obj.get_status_display(),
        )
    status_display.short_description = 'Status'

    def signature_short(self, obj):
        return format_html('<code style="font-size: 11px;">{}…{}</code>', obj.signature[:10], obj.signature[-6:])
    signature_short.short_description = 'Signature'

    def has_add_permission(self, request):
        return False

    def has_delete_permission(self, request, obj=None):
        return False

    def reconcile_selected(self, request, queryset):
        """Re-check selected transactions against the chain"""
        from .relay_service import RelayService
        service = RelayService()
        reconciled = 0
        for relay_tx in queryset:
            try:
                service.reconcile(relay_tx)
                reconciled += 1
            except RelayError as e:
                self.message_user(request, f"{relay_tx.signature}: {e.message}", level=messages.WARNING)
        self.message_user(request, f"Reconciled {reconciled} relay transaction(s).", level=messages.SUCCESS)
    reconcile_selected.short_description = "Reconcile selected transactions"
