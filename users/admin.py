from django.contrib import admin
from django.contrib import messages

from .models import User, Account


class AccountInline(admin.TabularInline):
    model = Account
    extra = 0
    fields = ('account_type', 'address', 'wallet_id', 'chain_type', 'created_at')
    readonly_fields = ('created_at',)


@admin.register(User)
class UserAdmin(admin.ModelAdmin):
    list_display = ('username', 'email', 'privy_id', 'display_currency', 'accounts_count', 'is_staff', 'created_at')
    list_filter = ('is_staff', 'is_superuser', 'display_currency', 'created_at')
    search_fields = ('username', 'email', 'privy_id', 'first_name', 'last_name')
    readonly_fields = ('privy_id', 'auth_token_version', 'created_at', 'updated_at')
    inlines = [AccountInline]
    actions = ('invalidate_tokens',)

    fieldsets = (
        ('Basic Information', {
            'fields': ('username', 'email', 'first_name', 'last_name', 'privy_id', 'display_currency')
        }),
        ('Permissions', {
            'fields': ('is_active', 'is_staff', 'is_superuser', 'groups', 'user_permissions'),
            'classes': ('collapse',)
        }),
        ('Security', {
            'fields': ('auth_token_version', 'created_at', 'updated_at'),
        }),
    )

    def accounts_count(self, obj):
        return obj.accounts.count()
    accounts_count.short_description = 'Accounts'

    def invalidate_tokens(self, request, queryset):
        for user in queryset:
            user.increment_auth_token_version()
        self.message_user(request, f"Invalidated session tokens for {queryset.count()} user(s).", level=messages.SUCCESS)
    invalidate_tokens.short_description = "Invalidate session tokens"


@admin.register(Account)
class AccountAdmin(admin.ModelAdmin):
    list_display = ('user', 'account_type', 'address', 'wallet_id', 'created_at', 'deleted_at')
    list_filter = ('account_type', 'chain_type', 'created_at')
    search_fields = ('user__email', 'address', 'wallet_id')
    readonly_fields = ('created_at', 'updated_at')

    def get_queryset(self, request):
        return Account.all_objects.select_related('user')
