"""
Run state: a structured, auditable outcome per project, component and version.
Saved as state.yaml in the working directory at the end of every run.
"""

import copy

STATE_PEND = 'pending'
STATE_PASS = 'passed'
STATE_FAIL = 'failed'
STATE_PART = 'partial'

# per version outcomes
BUILT = 'built'
SKIPPED_EXISTS = 'skipped-exists'
FAILED = 'failed'
INCOMPLETE = 'incomplete'
INDETERMINATE = 'indeterminate'
PLANNED = 'planned'

# per project outcome when upstream cannot be read
UNAVAILABLE = 'unavailable'

FAILED_OUTCOMES = {FAILED, INCOMPLETE, INDETERMINATE}

TEMPLATE_BASE_STATE = {
    'status': STATE_PASS,
    'msg': 'Complete'
}

TEMPLATE_PROJECT = {
    'status': STATE_PEND,
    'msg': '',
    'components': {},
    'total': 0,
    'success': 0,
    'fail': 0,
}


class MirrorStateError(Exception):
    pass


def init_project(state, project):
    projects = state.setdefault('projects', {})
    if project not in projects:
        projects[project] = copy.deepcopy(TEMPLATE_PROJECT)
    return projects[project]


def record_version(state, project, component, version, outcome, msg='', logger=None, **extra):
    proj = init_project(state, project)
    entry = dict(outcome=outcome, msg=msg, **extra)
    versions = proj['components'].setdefault(component, {})
    if str(version) not in versions:
        proj['total'] += 1
    else:
        previous = versions[str(version)]['outcome']
        proj['fail' if previous in FAILED_OUTCOMES else 'success'] -= 1
    versions[str(version)] = entry
    if outcome in FAILED_OUTCOMES:
        proj['fail'] += 1
        if logger:
            logger.error('[{}:{}] {}: {}'.format(component, version, outcome, msg))
    else:
        proj['success'] += 1


def record_attestation(state, project, component, version, attestation, logger=None):
    proj = init_project(state, project)
    entry = proj['components'].get(component, {}).get(str(version))
    if entry is None:
        raise MirrorStateError(f'No outcome recorded for {component}:{version}')
    entry['attestation'] = attestation.to_dict()
    if not attestation.complete and logger:
        logger.warning('[{}:{}] attestation incomplete: {}'.format(component, version, attestation.errors))


def record_project_unavailable(state, project, msg, logger=None):
    proj = init_project(state, project)
    proj['status'] = STATE_FAIL
    proj['msg'] = '{}: {}'.format(UNAVAILABLE, msg)
    if logger:
        logger.error('[{}] {}'.format(project, msg))


def record_project_fail(state, project, msg):
    proj = init_project(state, project)
    proj['status'] = STATE_FAIL
    proj['msg'] = msg


def record_project_finish(state, project, msg='Complete'):
    proj = init_project(state, project)
    if proj['status'] == STATE_FAIL:
        return
    if proj['fail'] and proj['success']:
        proj['status'] = STATE_PART
    elif proj['fail']:
        proj['status'] = STATE_FAIL
    else:
        proj['status'] = STATE_PASS
    proj['msg'] = msg


def record_finish(state):
    statuses = [p['status'] for p in state.get('projects', {}).values()]
    if statuses and all(s == STATE_FAIL for s in statuses):
        state['status'] = STATE_FAIL
    elif any(s in (STATE_FAIL, STATE_PART) for s in statuses):
        state['status'] = STATE_PART
    else:
        state['status'] = STATE_PASS


def version_outcomes(state, project, component):
    """ version -> outcome for one component """
    proj = state.get('projects', {}).get(project, {})
    return {v: e['outcome'] for v, e in proj.get('components', {}).get(component, {}).items()}
