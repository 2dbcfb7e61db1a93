from materialflow.auth.token import TokenPayload, get_current_user, verify_token
from materialflow.auth.rbac import require_admin, require_member, require_role
