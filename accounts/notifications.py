from notifications.models import Notification


def create_notification(user, title, body='', *, type='INFO', data=None, building=None):
    """
    Helper to emit a notification to a user.
    Intended for use by other apps/services without altering existing flows.
    """
    if user is None:
        return None
    return Notification.objects.create(
        user=user,
        building=building,
        title=title,
        body=body or '',
        type=type,
        status=Notification.STATUS_UNREAD,
        data=data or {},
    )
