from django.shortcuts import get_object_or_404
from django.contrib.auth.decorators import login_required
from django.http import JsonResponse
from django.views.decorators.http import require_GET, require_POST
from django.core.paginator import Paginator
from .models import Notification


def _serialize(notification):
    return {
        'id': notification.id,
        'type': notification.type,
        'title': notification.title,
        'description': notification.description,
        'link': notification.link,
        'created_at': notification.created_at.isoformat(),
        'is_opened': notification.is_opened,
    }


@login_required
@require_GET
def notification_list(request):
    """List notifications for the logged-in user with pagination"""
    notifications = Notification.objects.filter(user=request.user).order_by('-created_at')

    paginator = Paginator(notifications, 20)  # 20 notifications per page
    page_obj = paginator.get_page(request.GET.get('page'))

    unread_count = Notification.objects.filter(user=request.user, is_opened=False).count()

    return JsonResponse({
        'notifications': [_serialize(n) for n in page_obj],
        'unread_count': unread_count,
        'page': page_obj.number,
        'num_pages': paginator.num_pages,
    })


@login_required
@require_POST
def notification_mark_read(request, notification_id):
    """Mark a single notification as read"""
    notification = get_object_or_404(Notification, id=notification_id, user=request.user)
    if not notification.is_opened:
        notification.is_opened = True
        notification.save(update_fields=['is_opened'])
    return JsonResponse({'success': True})


@login_required
@require_POST
def notification_mark_all_read(request):
    """Mark all notifications as read for the logged-in user"""
    updated = Notification.objects.filter(user=request.user, is_opened=False).update(is_opened=True)
    return JsonResponse({'success': True, 'updated': updated})
