from django.contrib import admin
from django.contrib import messages
from django.utils.html import format_html

from .models import EmailClaim

STATUS_COLORS = {
    'pending': '#F59E0B',
    'claimed': '#10B981',
    'canceled': '#6B7280',
    'expired': '#EF4444',
}


@admin.register(EmailClaim)
class EmailClaimAdmin(admin.ModelAdmin):
    """Claims are settled on chain; the admin only inspects them and resends invitations"""
    list_display = [
        'id',
        'recipient_email',
        'sender_user',
        'amount_units',
        'status_display',
        'leased',
        'token_expires_at',
        'created_at',
    ]
    list_filter = ['status', 'created_at', 'token_expires_at']
    search_fields = ['recipient_email', 'sender_user__email', 'escrow_signature', 'claim_signature']
    readonly_fields = [f.name for f in EmailClaim._meta.fields]
    ordering = ['-created_at']
    actions = ['resend_invitations']

    def get_queryset(self, request):
        return super().get_queryset(request).select_related('sender_user', 'claimed_by_user')

    def status_display(self, obj):
        return format_html(
            '<span style="background-color: {}; color: white; padding: 2px 6px; '
            'border-radius: 4px; font-size: 11px;">{}</span>',
            STATUS_COLORS.get(obj.status, '#6B7280'),
            obj.get_status_display(),
        )
    status_display.short_description = 'Status'

    @admin.display(boolean=True, description='Leased')
    def leased(self, obj):
        return obj.sweep_lock_id is not None

    def has_add_permission(self, request):
        return False

    def has_delete_permission(self, request, obj=None):
        return False

    def resend_invitations(self, request, queryset):
        """Resend the claim email for pending, unexpired claims"""
        from .escrow_service import EmailClaimService
        service = EmailClaimService()
        sent = 0
        for claim in queryset.eligible().select_related('sender_user'):
            if service.send_claim_email(claim):
                sent += 1
        self.message_user(request, f"Resent {sent} invitation(s).", level=messages.SUCCESS)
    resend_invitations.short_description = "Resend claim invitations"
