import click
import json
import logging
import posixpath
from shakenfist_utilities import logs
import sys

from artship import catalog
from artship import client as artship_client
from artship import constants
from artship import diff as artship_diff
from artship.locate import NotFoundError
from artship import reference
from artship import util
from artship import walk


LOG = logs.setup_console(__name__)

RULE = '─' * 61
TYPE_FILTERS = [k.value for k in walk.TypeKind
                if k != walk.TypeKind.UNKNOWN] + [constants.FILTER_ALL]


def _enable_debug():
    logging.basicConfig(level=logging.DEBUG)
    LOG.setLevel(logging.DEBUG)
    for name in list(logging.root.manager.loggerDict):
        if name.startswith('artship'):
            logging.getLogger(name).setLevel(logging.DEBUG)


@click.group()
@click.option('--verbose', '-v', is_flag=True, help='Verbose debug output')
@click.option('--os', default='linux',
              help='Operating system to select from multi-platform images')
@click.option('--architecture', default='amd64',
              help='Architecture to select from multi-platform images')
@click.option('--variant', default='',
              help='Architecture variant to select, e.g. v8')
@click.option('--username', '-u', default=None, envvar='ARTSHIP_USERNAME',
              help='Username for registry authentication')
@click.option('--password', '-p', default=None, envvar='ARTSHIP_PASSWORD',
              help='Password for registry authentication')
@click.option('--token', '-t', default=None, envvar='ARTSHIP_TOKEN',
              help='Bearer token for registry authentication')
@click.option('--insecure', '-k', is_flag=True, default=False,
              help='Use HTTP instead of HTTPS for registry connections')
@click.option('--temp-dir', default=None,
              help='Directory for downloaded layers')
@click.pass_context
def cli(ctx, verbose=None, os=None, architecture=None, variant=None,
        username=None, password=None, token=None, insecure=None,
        temp_dir=None):
    """Inspect and copy artifacts out of OCI and Docker images."""
    if verbose:
        _enable_debug()

    ctx.obj = artship_client.Config(
        username=username, password=password, token=token,
        insecure=insecure, os=os, architecture=architecture,
        variant=variant, temp_dir=temp_dir)


def _client(ctx):
    return artship_client.Client(ctx.obj)


def _fail(e):
    click.echo('Error: %s' % e, err=True)
    sys.exit(1)


def _not_found(artifact, image):
    click.echo('%s Artifact %s not found in %s'
               % (click.style('✗', fg='red'), artifact, image))
    sys.exit(1)


def _heading(title):
    click.echo('')
    click.echo(click.style(title, fg='blue', bold=True))
    click.echo(click.style(RULE, fg='white'))


@click.command('ls')
@click.argument('image')
@click.option('--filter', '-f', 'type_filter', default=constants.FILTER_ALL,
              type=click.Choice(TYPE_FILTERS),
              help='Only list artifacts of this type')
@click.option('--detailed', '-d', is_flag=True, default=False,
              help='Show type, size and permissions')
@click.option('--layer', '-l', default=None,
              help='List one layer (by digest) instead of the whole image')
@click.pass_context
def list_cmd(ctx, image, type_filter, detailed, layer):
    """List the artifacts in IMAGE."""
    try:
        artifacts = _client(ctx).list(image, type_filter=type_filter,
                                      layer=layer)
    except util.ArtshipException as e:
        _fail(e)

    _heading('Image artifacts:')
    click.echo(catalog.format_artifacts(artifacts, detailed=detailed))


cli.add_command(list_cmd)


@click.command('info')
@click.argument('image')
@click.argument('artifact')
@click.pass_context
def info_cmd(ctx, image, artifact):
    """Show the type, size and permissions of ARTIFACT in IMAGE."""
    try:
        found = _client(ctx).info(image, artifact)
    except NotFoundError:
        _not_found(artifact, image)
    except util.ArtshipException as e:
        _fail(e)

    _heading('Artifact info:')
    click.echo(catalog.format_artifacts([found], detailed=True))


cli.add_command(info_cmd)


@click.command('has')
@click.argument('image')
@click.argument('artifact')
@click.pass_context
def has_cmd(ctx, image, artifact):
    """Check whether IMAGE contains ARTIFACT."""
    try:
        present = _client(ctx).has(image, artifact)
    except util.ArtshipException as e:
        _fail(e)

    if not present:
        _not_found(artifact, image)
    click.echo('%s Artifact %s found in %s'
               % (click.style('✓', fg='green'), artifact, image))


cli.add_command(has_cmd)


@click.command('cat')
@click.argument('image')
@click.argument('artifact')
@click.pass_context
def cat_cmd(ctx, image, artifact):
    """Print the content of the file ARTIFACT in IMAGE."""
    try:
        content = _client(ctx).cat(image, artifact)
    except NotFoundError:
        _not_found(artifact, image)
    except util.ArtshipException as e:
        _fail(e)

    click.echo(content, nl=False)


cli.add_command(cat_cmd)


def _print_summary(summary, title, where):
    click.echo('%s %s: %s' % (click.style('✓', fg='green', bold=True),
                              title, where))
    for line in str(summary).split('\n'):
        click.echo('  %s' % line)


@click.command('cp')
@click.argument('image')
@click.option('--artifact', '-a', 'artifacts', multiple=True, required=True,
              help='Artifact to copy, can be given more than once')
@click.option('--output', '-o', default='.',
              help='Target file, or directory for several artifacts')
@click.pass_context
def copy_cmd(ctx, image, artifacts, output):
    """Copy ARTIFACTs out of IMAGE.

    \b
    Artifacts are matched by exact path, by base name, or as a directory
    prefix. When the output is a directory each match is written under it
    by base name.

    \b
    Examples:
      artship cp alpine:3.19 -a etc/os-release -o ./os-release
      artship cp nginx:latest -a nginx.conf -a mime.types -o ./conf/
    """
    try:
        summary = _client(ctx).copy(image, list(artifacts), output)
    except util.ArtshipException as e:
        _fail(e)

    if summary.selectors_found < summary.selectors_requested:
        click.echo('%s Warning: only found %d of %d requested artifacts'
                   % (click.style('⚠', fg='yellow'), summary.selectors_found,
                      summary.selectors_requested))
    else:
        click.echo(click.style('✓ Successfully copied %d artifacts'
                               % summary.selectors_found,
                               fg='green', bold=True))


cli.add_command(copy_cmd)


def _default_output(image):
    try:
        return posixpath.basename(reference.parse_reference(image).repository)
    except util.ArtshipException as e:
        _fail(e)


@click.command('extract')
@click.argument('image')
@click.option('--output', '-o', default=None,
              help='Target directory (default: ./<image-name>)')
@click.pass_context
def extract_cmd(ctx, image, output):
    """Extract the whole filesystem of IMAGE to a directory."""
    if not output:
        output = _default_output(image)

    try:
        summary = _client(ctx).extract(image, output)
    except util.ArtshipException as e:
        _fail(e)

    _print_summary(summary, 'Successfully extracted image', output)


cli.add_command(extract_cmd)


@click.command('export')
@click.argument('image')
@click.option('--output', '-o', required=True,
              help='Target file path for the tar archive')
@click.pass_context
def export_cmd(ctx, image, output):
    """Save the flattened filesystem of IMAGE as a tar archive."""
    try:
        size = _client(ctx).export(image, output)
    except util.ArtshipException as e:
        _fail(e)

    click.echo('%s Successfully exported tar archive: %s'
               % (click.style('✓', fg='green', bold=True), output))
    click.echo('  Archive size: %s' % util.format_size(size))


cli.add_command(export_cmd)


@click.command('diff')
@click.argument('source')
@click.argument('target')
@click.option('--json', 'as_json', is_flag=True, default=False,
              help='Output diff results in JSON format')
@click.option('--show-unchanged', is_flag=True, default=False,
              help='Show unchanged files in the output')
@click.option('--no-color', is_flag=True, default=False,
              help='Disable colored output')
@click.option('--filter', '-f', 'status_filter', default=constants.FILTER_ALL,
              type=click.Choice(constants.DIFF_FILTERS),
              help='Only show one kind of change')
@click.pass_context
def diff_cmd(ctx, source, target, as_json, show_unchanged, no_color,
             status_filter):
    """Compare the filesystems of the SOURCE and TARGET images.

    Files are compared by size and permissions, not by content.
    """
    try:
        result = _client(ctx).diff(source, target,
                                   include_unchanged=show_unchanged)
        result = artship_diff.filter_result(result, status_filter)
    except util.ArtshipException as e:
        _fail(e)

    if as_json:
        click.echo(result.to_json())
    else:
        click.echo(result.render(color=not no_color,
                                 show_unchanged=show_unchanged))


cli.add_command(diff_cmd)


@click.command('tags')
@click.argument('repository')
@click.pass_context
def tags_cmd(ctx, repository):
    """List the tags of REPOSITORY."""
    try:
        tags = _client(ctx).tags(repository)
    except util.ArtshipException as e:
        _fail(e)

    click.echo('Available tags:')
    for tag in tags:
        click.echo(' %s' % tag)


cli.add_command(tags_cmd)


@click.command('meta')
@click.argument('image')
@click.pass_context
def meta_cmd(ctx, image):
    """Show the metadata of IMAGE."""
    try:
        meta = _client(ctx).meta(image)
    except util.ArtshipException as e:
        _fail(e)

    _heading('Image metadata:')
    click.echo(json.dumps(meta, indent=4, sort_keys=True))


cli.add_command(meta_cmd)


@click.command('mirror')
@click.argument('source')
@click.argument('destination')
@click.option('--src-username', default=None,
              help='Username for the source registry')
@click.option('--src-password', default=None,
              help='Password for the source registry')
@click.option('--src-token', default=None,
              help='Bearer token for the source registry')
@click.option('--dst-username', default=None,
              help='Username for the destination registry')
@click.option('--dst-password', default=None,
              help='Password for the destination registry')
@click.option('--dst-token', default=None,
              help='Bearer token for the destination registry')
@click.pass_context
def mirror_cmd(ctx, source, destination, src_username, src_password,
               src_token, dst_username, dst_password, dst_token):
    """Copy the image SOURCE to DESTINATION, possibly across registries.

    \b
    Examples:
      artship mirror nginx:latest myregistry.com/nginx:latest
      artship mirror alpine:3.18 localhost:5000/alpine:3.18 --insecure
    """
    try:
        result = _client(ctx).mirror(
            source, destination,
            source_credentials={'username': src_username,
                                'password': src_password,
                                'token': src_token},
            dest_credentials={'username': dst_username,
                              'password': dst_password,
                              'token': dst_token})
    except util.ArtshipException as e:
        _fail(e)

    click.echo('')
    click.echo(click.style('✓ Image successfully mirrored!', fg='green',
                           bold=True))
    click.echo(click.style(RULE, fg='white'))
    click.echo('Source:      %s' % result.source_image)
    click.echo('Destination: %s' % result.dest_image)
    click.echo('Digest:      %s' % result.digest)
    if result.size > 0:
        click.echo('Size:        %s' % util.format_size(result.size))


cli.add_command(mirror_cmd)


@click.command('pack')
@click.argument('image')
@click.argument('source')
@click.pass_context
def pack_cmd(ctx, image, source):
    """Pack the local file or directory SOURCE into IMAGE and push it."""
    try:
        digest = _client(ctx).pack(image, source)
    except util.ArtshipException as e:
        _fail(e)

    click.echo('%s Pushed %s (%s)'
               % (click.style('✓', fg='green', bold=True), image, digest))


cli.add_command(pack_cmd)


@click.command('version')
def version_cmd():
    """Show the artship version."""
    click.echo(util.get_version())


cli.add_command(version_cmd)
